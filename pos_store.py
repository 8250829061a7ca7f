#!/usr/bin/env python3
# Local store: SQLite + sync queue + commit notifications for live queries
import datetime as dt
import json
import logging
import re
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pos_config as cfg
from pos_errors import LocalStorageError

logger = logging.getLogger(__name__)

# Namespace for deterministic store ids, so two terminals seeding the same
# shop list agree on ids before the server has been reached.
STORE_NAMESPACE = uuid.UUID("5b0c8a52-3f57-4c3e-9a4e-1f1e8f1d2c11")

_WRITE_SQL = re.compile(
    r"^\s*(?:INSERT(?:\s+OR\s+\w+)?\s+INTO|REPLACE\s+INTO|UPDATE(?:\s+OR\s+\w+)?|DELETE\s+FROM)\s+[\"`\[]?(\w+)",
    re.IGNORECASE,
)


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def new_id() -> str:
    return str(uuid.uuid4())


def store_id_for(name: str) -> str:
    return str(uuid.uuid5(STORE_NAMESPACE, name.strip().lower()))


class TrackingConnection(sqlite3.Connection):
    """Connection that remembers which tables were written since the last reset."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.touched: Set[str] = set()

    def _track(self, sql: str):
        m = _WRITE_SQL.match(sql)
        if m:
            self.touched.add(m.group(1).lower())

    def execute(self, sql, parameters=(), /):
        self._track(sql)
        return super().execute(sql, parameters)

    def executemany(self, sql, seq_of_parameters, /):
        self._track(sql)
        return super().executemany(sql, seq_of_parameters)


class LocalStore:
    """One device-local database.

    All access goes through :meth:`transaction` (writes) or :meth:`read`
    (reads); both hold a re-entrant lock so the engine thread and the UI
    thread never interleave statements on the shared connection. After a
    write transaction commits, subscribers registered with :meth:`subscribe`
    are called with the set of tables that were written.
    """

    def __init__(self, db_path: str = cfg.POS_DB_PATH, schema_path: Optional[str] = cfg.POS_SCHEMA_PATH,
                 shops: Optional[Iterable[str]] = None):
        self.db_path = db_path
        self.conn: TrackingConnection = sqlite3.connect(
            db_path,
            timeout=30,
            isolation_level=None,
            check_same_thread=False,
            factory=TrackingConnection,
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._listeners: List[Dict[str, Any]] = []
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        if schema_path:
            init_db(self.conn, schema_path)
            self.seed_stores(cfg.POS_SHOPS if shops is None else shops)

    # ---------- TRANSACTIONS ----------
    @contextmanager
    def transaction(self):
        """Atomic write scope; nested calls join the outer transaction."""
        touched: Set[str] = set()
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return
            self._depth = 1
            self.conn.touched.clear()
            try:
                try:
                    self.conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as exc:
                    raise LocalStorageError(cause=exc) from exc
                try:
                    yield self.conn
                    self.conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    self._rollback()
                    logger.error("Local transaction failed: %s", exc)
                    raise LocalStorageError(cause=exc) from exc
                except BaseException:
                    self._rollback()
                    raise
                touched = set(self.conn.touched)
            finally:
                self._depth = 0
                self.conn.touched.clear()
        if touched:
            self._publish(touched)

    def _rollback(self):
        try:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")

    @contextmanager
    def read(self):
        with self._lock:
            yield self.conn

    # ---------- CHANGE NOTIFICATION ----------
    def subscribe(self, tables: Iterable[str], callback: Callable[[Set[str]], None]) -> Callable[[], None]:
        entry = {"tables": {t.lower() for t in tables}, "callback": callback}
        with self._lock:
            self._listeners.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)
        return unsubscribe

    def _publish(self, touched: Set[str]):
        with self._lock:
            listeners = list(self._listeners)
        for entry in listeners:
            if not entry["tables"] or entry["tables"] & touched:
                try:
                    entry["callback"](touched)
                except Exception:
                    logger.exception("Change listener failed for tables %s", sorted(touched))

    # ---------- REFERENCE DATA ----------
    def seed_stores(self, shops: Iterable[str]):
        """Ensure the Warehouse pseudo-store and the allowed shops exist."""
        names = [cfg.WAREHOUSE_NAME] + [s for s in shops if s and s != cfg.WAREHOUSE_NAME]
        with self.transaction() as conn:
            now = iso_now()
            for name in names:
                conn.execute("""
                    INSERT INTO stores (id, name, is_warehouse, updated_utc) VALUES (?,?,?,?)
                    ON CONFLICT(name) DO NOTHING
                """, (store_id_for(name), name, 1 if name == cfg.WAREHOUSE_NAME else 0, now))

    def close(self):
        with self._lock:
            self.conn.close()


def connect(db_path: str = cfg.POS_DB_PATH, schema_path: Optional[str] = cfg.POS_SCHEMA_PATH) -> LocalStore:
    return LocalStore(db_path, schema_path)


def init_db(conn: sqlite3.Connection, schema_path: str):
    with open(schema_path, "r", encoding="utf-8") as f:
        conn.executescript(f.read())


# ---------- HELPERS (run inside a transaction) ----------
def enqueue(conn: sqlite3.Connection, table: str, action: str, ref_id: Optional[str], payload: Dict[str, Any]) -> int:
    """Append one entry to the sync queue; must share the caller's transaction."""
    cur = conn.execute("""
        INSERT INTO sync_queue (table_name, action, ref_id, payload_json, created_utc)
        VALUES (?,?,?,?,?)
    """, (table, action, ref_id, json.dumps(payload, separators=(",", ":"), default=str), iso_now()))
    return int(cur.lastrowid)


def next_number(conn: sqlite3.Connection, table: str, column: str, start: int = 1) -> int:
    """Provisional display number: one above the highest known locally."""
    row = conn.execute(f"SELECT MAX({column}) AS n FROM {table}").fetchone()
    if row is None or row["n"] is None:
        return start
    return max(int(row["n"]) + 1, start)


def get_state(conn: sqlite3.Connection, key: str) -> Optional[str]:
    try:
        row = conn.execute("SELECT value FROM sync_state WHERE key=?", (key,)).fetchone()
    except sqlite3.OperationalError:
        return None
    return row["value"] if row else None


def set_state(conn: sqlite3.Connection, key: str, value: Optional[str]):
    conn.execute("""
        INSERT INTO sync_state (key, value) VALUES (?,?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
    """, (key, value))
