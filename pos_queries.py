# Reactive read side: query functions over the local store + live subscriptions
import functools
import json
import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, List, Optional

import pos_config as cfg
from pos_store import LocalStore

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 20


def depends_on(*tables: str, empty: Callable[[], Any] = list):
    """Declare the tables a query reads; a store without them yields ``empty()``."""
    def wrap(fn):
        @functools.wraps(fn)
        def inner(conn: sqlite3.Connection, *args, **kwargs):
            try:
                return fn(conn, *args, **kwargs)
            except sqlite3.OperationalError as exc:
                if "no such table" in str(exc):
                    return empty()
                raise
        inner.tables = frozenset(tables)
        return inner
    return wrap


def _rows(cur: sqlite3.Cursor) -> List[Dict[str, Any]]:
    return [dict(r) for r in cur.fetchall()]


def _group(items: List[Dict[str, Any]], key: str) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        grouped.setdefault(item[key], []).append(item)
    return grouped


# ---------- REFERENCE DATA ----------
@depends_on("products")
def fetch_products(conn: sqlite3.Connection, include_deleted: bool = False) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM products"
    if not include_deleted:
        sql += " WHERE deleted_utc IS NULL"
    return _rows(conn.execute(sql + " ORDER BY item_no, name"))


@depends_on("stores")
def fetch_stores(conn: sqlite3.Connection, include_warehouse: bool = True) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM stores"
    if not include_warehouse:
        sql += " WHERE is_warehouse=0"
    return _rows(conn.execute(sql + " ORDER BY is_warehouse DESC, name"))


@depends_on("products", "inventories", "stores")
def fetch_low_stock_products(conn: sqlite3.Connection, store_id: Optional[str] = None,
                             threshold: int = LOW_STOCK_THRESHOLD) -> List[Dict[str, Any]]:
    """Products below ``threshold`` in the warehouse (default) or in one shop; empty shelves first."""
    shop = None
    if store_id:
        shop = conn.execute("SELECT * FROM stores WHERE id=?", (store_id,)).fetchone()
        if shop is None:
            return []
    if shop is None or shop["is_warehouse"]:
        rows = _rows(conn.execute("""
            SELECT id, item_no, name, cost, price, warehouse_stock AS current_stock, restock_qty
            FROM products WHERE deleted_utc IS NULL AND warehouse_stock < ?
        """, (threshold,)))
        shop_name = cfg.WAREHOUSE_NAME
    else:
        rows = _rows(conn.execute("""
            SELECT p.id, p.item_no, p.name, p.cost, p.price, COALESCE(i.stock, 0) AS current_stock, p.restock_qty
            FROM products p
            LEFT JOIN inventories i ON i.product_id = p.id AND i.store_id = ?
            WHERE p.deleted_utc IS NULL AND COALESCE(i.stock, 0) < ?
        """, (shop["id"], threshold)))
        shop_name = shop["name"]
    for r in rows:
        r["restock_qty"] = r["restock_qty"] or 10
        r["shop"] = shop_name
    rows.sort(key=lambda r: (r["current_stock"] != 0, r["name"].lower()))
    return rows


@depends_on("inventories", "products", "stores")
def fetch_inventory(conn: sqlite3.Connection, store_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = """
        SELECT i.id, i.store_id, s.name AS store_name, i.product_id, i.stock, i.updated_utc,
               p.item_no, p.name AS product_name, p.price, p.cost
        FROM inventories i
        JOIN products p ON p.id = i.product_id
        JOIN stores s ON s.id = i.store_id
        WHERE p.deleted_utc IS NULL
    """
    params: tuple = ()
    if store_id:
        sql += " AND i.store_id=?"
        params = (store_id,)
    return _rows(conn.execute(sql + " ORDER BY s.name, p.name", params))


# ---------- SALES ----------
@depends_on("transaction_items")
def fetch_transaction_items(conn: sqlite3.Connection, transaction_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if transaction_id:
        return _rows(conn.execute(
            "SELECT * FROM transaction_items WHERE transaction_id=? ORDER BY rowid", (transaction_id,)
        ))
    return _rows(conn.execute("SELECT * FROM transaction_items ORDER BY rowid"))


@depends_on("transactions", "transaction_items", "stores")
def fetch_transactions(conn: sqlite3.Connection, store_id: Optional[str] = None,
                       limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Sales newest first, each with its line items."""
    sql = """
        SELECT t.*, s.name AS store_name
        FROM transactions t LEFT JOIN stores s ON s.id = t.store_id
    """
    params: list = []
    if store_id:
        sql += " WHERE t.store_id=?"
        params.append(store_id)
    sql += " ORDER BY t.created_utc DESC, t.transaction_no DESC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    txs = _rows(conn.execute(sql, params))
    if not txs:
        return txs
    marks = ",".join("?" * len(txs))
    items = _group(_rows(conn.execute(
        f"SELECT * FROM transaction_items WHERE transaction_id IN ({marks}) ORDER BY rowid",
        [t["id"] for t in txs],
    )), "transaction_id")
    for t in txs:
        t["synced"] = bool(t["synced_utc"])
        t["items"] = items.get(t["id"], [])
    return txs


# ---------- APPROVALS ----------
@depends_on("pending_changes", "products", "stores")
def fetch_pending_changes(conn: sqlite3.Connection, status: Optional[str] = None,
                          store_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = """
        SELECT c.*, p.name AS product_name, s.name AS store_name
        FROM pending_changes c
        LEFT JOIN products p ON p.id = c.product_id
        LEFT JOIN stores s ON s.id = c.store_id
        WHERE 1=1
    """
    params: list = []
    if status:
        sql += " AND c.status=?"
        params.append(status)
    if store_id:
        sql += " AND c.store_id=?"
        params.append(store_id)
    return _rows(conn.execute(sql + " ORDER BY c.updated_utc DESC, c.created_utc DESC", params))


# ---------- TRANSFERS ----------
@depends_on("stock_transfer_items")
def fetch_transfer_items(conn: sqlite3.Connection, transfer_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if transfer_id:
        return _rows(conn.execute(
            "SELECT * FROM stock_transfer_items WHERE stock_transfer_id=? ORDER BY rowid", (transfer_id,)
        ))
    return _rows(conn.execute("SELECT * FROM stock_transfer_items ORDER BY rowid"))


@depends_on("stock_transfers", "stock_transfer_items", "stores")
def fetch_transfers(conn: sqlite3.Connection, status: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = """
        SELECT t.*, s.name AS to_store
        FROM stock_transfers t LEFT JOIN stores s ON s.id = t.to_store_id
    """
    params: tuple = ()
    if status:
        sql += " WHERE t.status=?"
        params = (status,)
    transfers = _rows(conn.execute(sql + " ORDER BY t.updated_utc DESC, t.transfer_no DESC", params))
    items = _group(fetch_transfer_items(conn), "stock_transfer_id")
    for t in transfers:
        t["items"] = items.get(t["id"], [])
    return transfers


# ---------- STOCK-IN ----------
@depends_on("inventory_additions", "inventory_addition_items")
def fetch_additions(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    additions = _rows(conn.execute(
        "SELECT * FROM inventory_additions ORDER BY updated_utc DESC, addition_no DESC"
    ))
    items = _group(_rows(conn.execute(
        "SELECT * FROM inventory_addition_items ORDER BY rowid"
    )), "inventory_addition_id")
    for a in additions:
        a["items"] = items.get(a["id"], [])
    return additions


# ---------- SYNC QUEUE ----------
@depends_on("sync_queue")
def fetch_sync_queue(conn: sqlite3.Connection, status: Optional[str] = None) -> List[Dict[str, Any]]:
    if status:
        rows = _rows(conn.execute("SELECT * FROM sync_queue WHERE status=? ORDER BY id", (status,)))
    else:
        rows = _rows(conn.execute("SELECT * FROM sync_queue ORDER BY id"))
    for r in rows:
        raw = r.pop("payload_json") or "{}"
        try:
            r["payload"] = json.loads(raw)
        except ValueError:
            r["payload"] = None
            r["payload_raw"] = raw
    return rows


@depends_on("sync_queue", empty=int)
def unsynced_count(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0])


@depends_on("sync_queue", empty=int)
def needs_attention_count(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM sync_queue WHERE status='needs_attention'").fetchone()[0])


@depends_on("products", "inventories", "stock_transfers", "stock_transfer_items", "stores", empty=dict)
def stock_position(conn: sqlite3.Connection, product_id: str) -> Dict[str, Any]:
    """Where every unit of a product is: warehouse, reserved for pending transfers, shops."""
    product = conn.execute("SELECT id, name, warehouse_stock FROM products WHERE id=?", (product_id,)).fetchone()
    if product is None:
        return {}
    in_transit = conn.execute("""
        SELECT COALESCE(SUM(i.qty), 0) FROM stock_transfer_items i
        JOIN stock_transfers t ON t.id = i.stock_transfer_id
        WHERE t.status='pending' AND i.product_id=?
    """, (product_id,)).fetchone()[0]
    stores = {
        r["name"]: int(r["stock"])
        for r in conn.execute("""
            SELECT s.name, i.stock FROM inventories i JOIN stores s ON s.id = i.store_id
            WHERE i.product_id=? ORDER BY s.name
        """, (product_id,))
    }
    store_total = sum(stores.values())
    return {
        "product_id": product["id"],
        "name": product["name"],
        "warehouse": int(product["warehouse_stock"]),
        "in_transit": int(in_transit),
        "stores": stores,
        "store_total": store_total,
        "total": int(product["warehouse_stock"]) + int(in_transit) + store_total,
    }


# ---------- LIVE QUERIES ----------
class LiveQuery:
    """
    Keeps the result of one query current.

    The query is re-run after every committed local transaction that wrote
    one of its tables, and the new value is handed to each subscriber.
    """

    def __init__(self, store: LocalStore, fn: Callable[..., Any], *args, **kwargs):
        self.store = store
        self.fn = fn
        self.args = args
        self.kwargs = kwargs
        self.tables = getattr(fn, "tables", frozenset())
        self._callbacks: List[Callable[[Any], None]] = []
        self._lock = threading.Lock()
        self._value: Any = None
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self.tables, self._on_change)
        self.refresh()

    @property
    def value(self) -> Any:
        return self._value

    def refresh(self) -> Any:
        with self.store.read() as conn:
            self._value = self.fn(conn, *self.args, **self.kwargs)
        return self._value

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)
        callback(self._value)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)
        return unsubscribe

    def _on_change(self, touched):
        value = self.refresh()
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            cb(value)

    def close(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            self._callbacks.clear()
