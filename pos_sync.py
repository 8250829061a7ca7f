#!/usr/bin/env python3
# Sync engine: drain the local queue to the server in order, then reconcile
import json
import logging
import sqlite3
import threading
from collections import namedtuple
from typing import Any, Dict, List, Optional, Tuple

import requests

import pos_config as cfg
from pos_errors import RecordNotFound, ServerRejected, SyncDeferred
from pos_queries import needs_attention_count, unsynced_count
from pos_store import LocalStore, get_state, iso_now, set_state

logger = logging.getLogger(__name__)

Route = namedtuple("Route", "method path reconcile")

# (table, action) -> server request; reconcile names a SyncEngine method run on 2xx
ROUTES: Dict[Tuple[str, str], Route] = {
    ("products", "create"): Route("POST", "/api/products", "_reconcile_product"),
    ("products", "bulk_create"): Route("POST", "/api/products/bulk", "_reconcile_bulk_products"),
    ("products", "update"): Route("POST", "/api/products/restock", "_reconcile_restock"),
    ("products", "delete"): Route("DELETE", "/api/products", "_reconcile_product_delete"),
    ("inventories", "delete"): Route("DELETE", "/api/inventory", None),
    ("inventoryAdditions", "create"): Route("POST", "/api/inventory/addition", "_reconcile_addition"),
    ("pendingChanges", "create"): Route("POST", "/api/inventory/request-change", "_reconcile_change"),
    ("pendingChanges", "approve"): Route("POST", "/api/inventory/approve-change", None),
    ("pendingChanges", "reject"): Route("POST", "/api/inventory/reject-change", None),
    ("pendingChanges", "cancel"): Route("POST", "/api/inventory/cancel-change", None),
    ("pendingChanges", "update"): Route("POST", "/api/inventory/confirm-return", None),
    ("stockTransfers", "create"): Route("POST", "/api/transfer", "_reconcile_transfer"),
    ("stockTransfers", "confirm"): Route("POST", "/api/transfer/confirm", "_mark_transfer_synced"),
    ("stockTransfers", "cancel"): Route("POST", "/api/transfer/cancel", "_mark_transfer_synced"),
    ("transactions", "create"): Route("POST", "/api/transactions", "_reconcile_transaction"),
}

TRANSIENT_STATUS = (408, 429)


def _pick(body: Any, *keys: str) -> Any:
    """Find the first key in a response body or any dict nested one level down."""
    if not isinstance(body, dict):
        return None
    for key in keys:
        if body.get(key) not in (None, ""):
            return body[key]
    for value in body.values():
        if isinstance(value, dict):
            for key in keys:
                if value.get(key) not in (None, ""):
                    return value[key]
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _server_id(conn: sqlite3.Connection, table: str, local_id: Optional[str]) -> Optional[str]:
    if not local_id:
        return local_id
    row = conn.execute(f"SELECT canonical_id FROM {table} WHERE id=?", (local_id,)).fetchone()
    if row is not None and row["canonical_id"]:
        return row["canonical_id"]
    return local_id


def _local_id(conn: sqlite3.Connection, table: str, server_id: Optional[str],
              name_col: Optional[str] = None, name: Optional[str] = None) -> Optional[str]:
    if server_id:
        row = conn.execute(
            f"SELECT id FROM {table} WHERE canonical_id=? OR id=? ORDER BY canonical_id IS NULL LIMIT 1",
            (server_id, server_id),
        ).fetchone()
        if row is not None:
            return row["id"]
    if name_col and name:
        row = conn.execute(f"SELECT id FROM {table} WHERE {name_col}=?", (name,)).fetchone()
        if row is not None:
            return row["id"]
    return None


class SyncEngine:
    """
    Replays the sync queue against the central server.

    Entries go out strictly oldest first. A transient failure (network,
    timeout, 408/429/5xx) leaves the entry queued and stops the drain; a
    rejection (other 4xx) parks it as ``needs_attention`` and also stops,
    since later entries may depend on it. ``sync()`` never raises.
    """

    def __init__(self, store: LocalStore, base_url: Optional[str] = cfg.POS_API_BASE,
                 session: Optional[requests.Session] = None, timeout: float = cfg.SYNC_TIMEOUT,
                 pull: bool = cfg.SYNC_PULL, token: Optional[str] = cfg.POS_API_TOKEN,
                 device_id: str = cfg.POS_DEVICE_ID):
        self.store = store
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.pull_enabled = pull
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-POS-Device": device_id,
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self._lock = threading.Lock()
        self._rerun = False
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def syncing(self) -> bool:
        return self._lock.locked()

    # ---------- PUBLIC ----------
    def sync(self) -> Dict[str, Any]:
        result: Optional[Dict[str, Any]] = None
        synced = 0
        while True:
            # set before trying the lock so the running drain sees it after release
            self._rerun = True
            if not self._lock.acquire(blocking=False):
                if result is not None:
                    return result
                logger.debug("Sync already running; queued a rerun")
                return self.summary("busy", 0)
            try:
                if not self.base_url:
                    result = self.summary("deferred", 0, "no server configured")
                else:
                    result = self._run()
                synced += result["synced"]
                result["synced"] = synced
                self.last_result = result
            finally:
                self._lock.release()
            if result["status"] != "ok" or not self._rerun:
                return result

    def retry_entry(self, entry_id: int) -> Dict[str, Any]:
        """Put a parked entry back in line at its original position."""
        with self.store.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id=?", (entry_id,)).fetchone()
            if row is None:
                raise RecordNotFound(f"unknown queue entry: {entry_id}")
            conn.execute("UPDATE sync_queue SET status='queued', last_error=NULL WHERE id=?", (entry_id,))
            logger.info("Queue entry %s (%s/%s) re-queued", entry_id, row["table_name"], row["action"])
            return dict(conn.execute("SELECT * FROM sync_queue WHERE id=?", (entry_id,)).fetchone())

    def discard_entry(self, entry_id: int) -> Dict[str, Any]:
        """Drop an entry for good; its local effect stays as recorded."""
        with self.store.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id=?", (entry_id,)).fetchone()
            if row is None:
                raise RecordNotFound(f"unknown queue entry: {entry_id}")
            conn.execute("DELETE FROM sync_queue WHERE id=?", (entry_id,))
        logger.warning("Queue entry %s (%s/%s) discarded", entry_id, row["table_name"], row["action"])
        return dict(row)

    # ---------- DRAIN ----------
    def _run(self) -> Dict[str, Any]:
        """One drain pass plus the pull; ``sync()`` repeats it while reruns are requested."""
        self._rerun = False
        synced = 0
        status, error = "ok", None
        try:
            synced, status, error = self._drain()
            with self.store.transaction() as conn:
                set_state(conn, "last_sync_utc", iso_now())
            if status == "ok" and self.pull_enabled and not self._rerun:
                with self.store.read() as conn:
                    empty = unsynced_count(conn) == 0
                if empty:
                    self.pull()
        except Exception as exc:
            logger.exception("Sync run failed")
            status, error = "deferred", str(exc)
        result = self.summary(status, synced, error)
        log = logger.info if status == "ok" else logger.warning
        log("Sync %s: %d synced, %d remaining, %d need attention",
            status, synced, result["remaining"], result["needs_attention"])
        return result

    def _drain(self) -> Tuple[int, str, Optional[str]]:
        synced = 0
        while True:
            with self.store.read() as conn:
                row = conn.execute("SELECT * FROM sync_queue ORDER BY id LIMIT 1").fetchone()
                if row is None:
                    return synced, "ok", None
                entry = dict(row)
                if entry["status"] == "needs_attention":
                    return synced, "needs_attention", entry["last_error"]
                route = ROUTES.get((entry["table_name"], entry["action"]))
                request, error = None, None
                if route is None:
                    error = f"no route for {entry['table_name']}/{entry['action']}"
                else:
                    try:
                        request = self._build_request(conn, entry, route)
                    except ValueError as exc:
                        error = f"unreadable payload: {exc}"

            if error:
                self._park(entry, error)
                return synced, "needs_attention", error

            try:
                body = self._send(*request)
            except SyncDeferred as exc:
                self._defer(entry, str(exc))
                return synced, "deferred", str(exc)
            except ServerRejected as exc:
                self._park(entry, str(exc))
                return synced, "needs_attention", str(exc)

            with self.store.transaction() as conn:
                if route.reconcile:
                    getattr(self, route.reconcile)(conn, entry, body)
                conn.execute("DELETE FROM sync_queue WHERE id=?", (entry["id"],))
            synced += 1
            logger.info("Synced queue entry %s (%s/%s)", entry["id"], entry["table_name"], entry["action"])

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]], body: Dict[str, Any]) -> Any:
        url = self.base_url + path
        try:
            resp = self.session.request(method, url, params=params, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise SyncDeferred(f"{type(exc).__name__}: {exc}") from exc
        code = resp.status_code
        if 200 <= code < 300:
            try:
                return resp.json()
            except ValueError:
                return {}
        detail = (resp.text or "")[:500]
        if code in TRANSIENT_STATUS or code >= 500 or code < 400:
            raise SyncDeferred(f"http {code}: {detail}".rstrip(": "))
        raise ServerRejected(code, detail)

    def _defer(self, entry: Dict[str, Any], error: str):
        with self.store.transaction() as conn:
            conn.execute(
                "UPDATE sync_queue SET attempts=attempts+1, last_error=? WHERE id=?", (error, entry["id"])
            )
        logger.warning("Queue entry %s (%s/%s) deferred: %s",
                       entry["id"], entry["table_name"], entry["action"], error)

    def _park(self, entry: Dict[str, Any], error: str):
        with self.store.transaction() as conn:
            conn.execute("""
                UPDATE sync_queue SET attempts=attempts+1, last_error=?, status='needs_attention' WHERE id=?
            """, (error, entry["id"]))
        logger.warning("Queue entry %s (%s/%s) needs attention: %s",
                       entry["id"], entry["table_name"], entry["action"], error)

    def summary(self, status: str, synced: int, error: Optional[str] = None) -> Dict[str, Any]:
        with self.store.read() as conn:
            remaining = unsynced_count(conn)
            attention = needs_attention_count(conn)
        return {
            "status": status,
            "synced": synced,
            "remaining": remaining,
            "needs_attention": attention,
            "error": error,
        }

    # ---------- OUTGOING REQUESTS ----------
    def _build_request(self, conn: sqlite3.Connection, entry: Dict[str, Any],
                       route: Route) -> Tuple[str, str, Optional[Dict[str, Any]], Dict[str, Any]]:
        """Resolve local references to server ids as they stand right now."""
        body = json.loads(entry["payload_json"] or "{}")
        table, action = entry["table_name"], entry["action"]

        if body.get("productId"):
            body["productId"] = _server_id(conn, "products", body["productId"])
        if body.get("storeId"):
            body["storeId"] = _server_id(conn, "stores", body["storeId"])
        for item in body.get("items") or []:
            if isinstance(item, dict) and item.get("productId"):
                item["productId"] = _server_id(conn, "products", item["productId"])
        if body.get("pendingChangeId"):
            body["pendingChangeId"] = _server_id(conn, "pending_changes", body["pendingChangeId"])
        if table == "stockTransfers" and action in ("confirm", "cancel"):
            row = conn.execute("SELECT transfer_no FROM stock_transfers WHERE id=?", (entry["ref_id"],)).fetchone()
            if row is not None and row["transfer_no"] is not None:
                body["transferId"] = row["transfer_no"]

        params = None
        if (table, action) == ("products", "delete"):
            params = {"id": _server_id(conn, "products", body.get("id"))}
        elif (table, action) == ("inventories", "delete"):
            params = {"productId": body.get("productId")}
            if body.get("storeId"):
                params["storeId"] = body["storeId"]
            else:
                params["storeName"] = body.get("storeName")
        return route.method, route.path, params, body

    # ---------- RECONCILIATION (inside the delete-entry transaction) ----------
    def _reconcile_transaction(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        conn.execute("""
            UPDATE transactions SET
              transaction_no = COALESCE(?, transaction_no),
              canonical_id = COALESCE(?, canonical_id, id),
              synced_utc = ?
            WHERE id=?
        """, (_as_int(_pick(body, "transactionId", "transaction_no")), _pick(body, "id"), iso_now(), entry["ref_id"]))

    def _reconcile_product(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        conn.execute("""
            UPDATE products SET
              item_no = COALESCE(?, item_no),
              canonical_id = COALESCE(?, canonical_id, id),
              synced_utc = ?
            WHERE id=?
        """, (_as_int(_pick(body, "itemId", "item_no")), _pick(body, "id"), iso_now(), entry["ref_id"]))

    def _reconcile_bulk_products(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        payload = json.loads(entry["payload_json"] or "{}")
        returned = {}
        if isinstance(body, dict):
            for p in body.get("products") or []:
                if isinstance(p, dict) and p.get("name"):
                    returned[p["name"]] = p
        now = iso_now()
        for p in payload.get("products") or []:
            server = returned.get(p.get("name"), {})
            conn.execute("""
                UPDATE products SET
                  item_no = COALESCE(?, item_no),
                  canonical_id = COALESCE(?, canonical_id, id),
                  synced_utc = ?
                WHERE id=?
            """, (_as_int(server.get("itemId")), server.get("id"), now, p.get("id")))

    def _reconcile_restock(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        stock = _as_int(_pick(body, "warehouseStock"))
        later = conn.execute("SELECT 1 FROM sync_queue WHERE id > ? LIMIT 1", (entry["id"],)).fetchone()
        # server stock would not include later optimistic local moves yet
        if stock is not None and stock >= 0 and later is None:
            conn.execute("UPDATE products SET warehouse_stock=?, synced_utc=? WHERE id=?",
                         (stock, iso_now(), entry["ref_id"]))
        else:
            conn.execute("UPDATE products SET synced_utc=? WHERE id=?", (iso_now(), entry["ref_id"]))

    def _reconcile_product_delete(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        product_id = entry["ref_id"]
        referenced = conn.execute("""
            SELECT 1 WHERE
              EXISTS (SELECT 1 FROM transaction_items WHERE product_id=?)
              OR EXISTS (SELECT 1 FROM inventories WHERE product_id=?)
              OR EXISTS (SELECT 1 FROM stock_transfer_items WHERE product_id=?)
              OR EXISTS (SELECT 1 FROM pending_changes WHERE product_id=?)
              OR EXISTS (SELECT 1 FROM inventory_addition_items WHERE product_id=?)
              OR EXISTS (SELECT 1 FROM sync_queue WHERE ref_id=? AND id<>?)
        """, (product_id,) * 6 + (entry["id"],)).fetchone()
        if referenced:
            conn.execute("UPDATE products SET synced_utc=? WHERE id=?", (iso_now(), product_id))
        else:
            conn.execute("DELETE FROM products WHERE id=? AND deleted_utc IS NOT NULL", (product_id,))

    def _reconcile_addition(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        conn.execute("""
            UPDATE inventory_additions SET
              addition_no = COALESCE(?, addition_no),
              canonical_id = COALESCE(?, canonical_id, id),
              synced_utc = ?
            WHERE id=?
        """, (_as_int(_pick(body, "additionId")), _pick(body, "id"), iso_now(), entry["ref_id"]))

    def _reconcile_change(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        server_id = _pick(body, "pendingChangeId", "id")
        if server_id:
            conn.execute("UPDATE pending_changes SET canonical_id=? WHERE id=?", (server_id, entry["ref_id"]))

    def _reconcile_transfer(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        conn.execute("""
            UPDATE stock_transfers SET
              transfer_no = COALESCE(?, transfer_no),
              canonical_id = COALESCE(?, canonical_id, id),
              synced_utc = ?
            WHERE id=?
        """, (_as_int(_pick(body, "transferId")), _pick(body, "id"), iso_now(), entry["ref_id"]))

    def _mark_transfer_synced(self, conn: sqlite3.Connection, entry: Dict[str, Any], body: Any):
        conn.execute("UPDATE stock_transfers SET synced_utc=? WHERE id=?", (iso_now(), entry["ref_id"]))

    # ---------- SNAPSHOT PULL ----------
    def pull(self) -> Dict[str, int]:
        """
        Refresh local mirrors from the server; failures are logged, never raised.

        Stops at the first step that finds queued local changes, since the
        snapshot fetched for it predates them.
        """
        counts: Dict[str, int] = {}
        complete = True
        steps = [
            ("stores", "/api/stores", None, self._apply_stores),
            ("products", "/api/products", None, self._apply_products),
            ("inventories", "/api/inventory/all", None, self._apply_inventories),
            ("pending_changes", "/api/inventory/pending-changes", {"status": "pending"}, self._apply_changes),
            ("stock_transfers", "/api/transfer", None, self._apply_transfers),
            ("inventory_additions", "/api/inventory/addition", None, self._apply_additions),
            ("transactions", "/api/transactions", None, self._apply_transactions),
        ]
        for name, path, params, apply in steps:
            try:
                resp = self.session.get(self.base_url + path, params=params, timeout=self.timeout)
                resp.raise_for_status()
                data = resp.json()
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Pull %s failed: %s", path, exc)
                continue
            if isinstance(data, dict):
                data = data.get("changes") or data.get("data") or []
            if not isinstance(data, list):
                logger.warning("Pull %s returned unexpected payload", path)
                continue
            try:
                with self.store.transaction() as conn:
                    if unsynced_count(conn):
                        complete = False
                    else:
                        counts[name] = apply(conn, [d for d in data if isinstance(d, dict)])
            except Exception:
                logger.exception("Applying pulled %s failed", name)
            if not complete:
                logger.info("Local changes queued during pull; stopped before %s", name)
                break
        if complete:
            with self.store.transaction() as conn:
                set_state(conn, "last_pull_utc", iso_now())
        logger.info("Pulled %s", ", ".join(f"{k}={v}" for k, v in counts.items()) or "nothing")
        return counts

    def _apply_stores(self, conn: sqlite3.Connection, stores: List[Dict[str, Any]]) -> int:
        now = iso_now()
        for s in stores:
            if not s.get("name"):
                continue
            local = _local_id(conn, "stores", s.get("id"), "name", s["name"])
            if local:
                conn.execute("""
                    UPDATE stores SET canonical_id=COALESCE(?, canonical_id), location=COALESCE(?, location), updated_utc=?
                    WHERE id=?
                """, (s.get("id"), s.get("location"), now, local))
            else:
                conn.execute("""
                    INSERT INTO stores (id, name, location, is_warehouse, canonical_id, updated_utc) VALUES (?,?,?,?,?,?)
                """, (s["id"], s["name"], s.get("location"), 1 if s["name"] == cfg.WAREHOUSE_NAME else 0, s["id"], now))
        return len(stores)

    def _apply_products(self, conn: sqlite3.Connection, products: List[Dict[str, Any]]) -> int:
        now = iso_now()
        for p in products:
            if not p.get("id") or not p.get("name"):
                continue
            stock = _as_int(p.get("warehouseStock"))
            values = (
                _as_int(p.get("itemId")), p.get("cost"), p.get("price"),
                max(0, stock) if stock is not None else None, _as_int(p.get("restockQty")),
            )
            local = _local_id(conn, "products", p["id"], "name", p["name"])
            if local:
                conn.execute("""
                    UPDATE products SET item_no=COALESCE(?, item_no), cost=COALESCE(?, cost), price=COALESCE(?, price),
                           warehouse_stock=COALESCE(?, warehouse_stock), restock_qty=COALESCE(?, restock_qty),
                           canonical_id=?, synced_utc=?, updated_utc=?
                    WHERE id=?
                """, values + (p["id"], now, now, local))
            else:
                conn.execute("""
                    INSERT INTO products (item_no, cost, price, warehouse_stock, restock_qty,
                                          id, name, canonical_id, synced_utc, updated_utc)
                    VALUES (?,COALESCE(?,0),COALESCE(?,0),COALESCE(?,0),COALESCE(?,10),?,?,?,?,?)
                """, values + (p["id"], p["name"], p["id"], now, now))
        return len(products)

    def _apply_inventories(self, conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> int:
        now = iso_now()
        applied = 0
        for r in rows:
            store_name = r.get("storeName")
            if isinstance(r.get("store"), dict):
                store_name = r["store"].get("name")
            store_id = _local_id(conn, "stores", r.get("storeId"), "name", store_name)
            product_id = _local_id(conn, "products", r.get("productId"))
            if not store_id or not product_id:
                continue
            conn.execute("""
                INSERT INTO inventories (id, store_id, product_id, stock, updated_utc) VALUES (?,?,?,?,?)
                ON CONFLICT(store_id, product_id) DO UPDATE SET stock=excluded.stock, updated_utc=excluded.updated_utc
            """, (r.get("id") or f"{store_id}:{product_id}", store_id, product_id,
                  max(0, _as_int(r.get("stock")) or 0), now))
            applied += 1
        return applied

    def _apply_changes(self, conn: sqlite3.Connection, changes: List[Dict[str, Any]]) -> int:
        now = iso_now()
        applied = 0
        for c in changes:
            if not c.get("id"):
                continue
            local = _local_id(conn, "pending_changes", c["id"])
            if local:
                conn.execute("""
                    UPDATE pending_changes SET status=COALESCE(?, status), reviewed_by=COALESCE(?, reviewed_by),
                           canonical_id=?, updated_utc=?
                    WHERE id=?
                """, (c.get("status"), c.get("reviewedBy"), c["id"], now, local))
                applied += 1
                continue
            store_id = _local_id(conn, "stores", c.get("storeId"))
            product_id = _local_id(conn, "products", c.get("productId"))
            if not store_id or not product_id or c.get("changeType") not in (
                    "add", "remove", "adjust", "return", "remove_product"):
                continue
            conn.execute("""
                INSERT INTO pending_changes (id, product_id, store_id, change_type, qty, new_cost, new_price, reason,
                                             status, requested_by, reviewed_by, canonical_id, created_utc, updated_utc)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """, (c["id"], product_id, store_id, c["changeType"], max(0, _as_int(c.get("qty")) or 0),
                  c.get("newCost"), c.get("newPrice"), c.get("reason"), c.get("status") or "pending",
                  c.get("requestedBy"), c.get("reviewedBy"), c["id"], c.get("createdAt") or now, now))
            applied += 1
        return applied

    def _match_numbered(self, conn: sqlite3.Connection, table: str, number_col: str,
                        server_id: Optional[str], number: Optional[int]) -> Optional[str]:
        local = _local_id(conn, table, server_id)
        if local is None and number is not None:
            row = conn.execute(
                f"SELECT id FROM {table} WHERE {number_col}=? AND synced_utc IS NOT NULL", (number,)
            ).fetchone()
            local = row["id"] if row else None
        return local

    def _apply_transfers(self, conn: sqlite3.Connection, transfers: List[Dict[str, Any]]) -> int:
        now = iso_now()
        applied = 0
        for t in transfers:
            number = _as_int(t.get("transferId"))
            local = self._match_numbered(conn, "stock_transfers", "transfer_no", t.get("id"), number)
            status = t.get("status") if t.get("status") in ("pending", "confirmed", "cancelled") else None
            if local:
                conn.execute("""
                    UPDATE stock_transfers SET transfer_no=COALESCE(?, transfer_no), status=COALESCE(?, status),
                           confirmed_utc=COALESCE(?, confirmed_utc), confirmed_by=COALESCE(?, confirmed_by),
                           cancelled_utc=COALESCE(?, cancelled_utc), cancelled_reason=COALESCE(?, cancelled_reason),
                           canonical_id=COALESCE(?, canonical_id), synced_utc=COALESCE(synced_utc, ?)
                    WHERE id=?
                """, (number, status, t.get("confirmedAt"), t.get("confirmedBy"), t.get("cancelledAt"),
                      t.get("cancelledReason"), t.get("id"), now, local))
                applied += 1
                continue
            to_store = _local_id(conn, "stores", t.get("toStoreId"), "name", t.get("toStore"))
            if not t.get("id") or not to_store:
                continue
            conn.execute("""
                INSERT INTO stock_transfers (id, transfer_no, from_store, to_store_id, status, created_utc, updated_utc,
                                             confirmed_utc, confirmed_by, cancelled_utc, cancelled_reason,
                                             canonical_id, synced_utc)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """, (t["id"], number, t.get("fromStore") or cfg.WAREHOUSE_NAME, to_store, status or "pending",
                  t.get("createdAt") or now, t.get("updatedAt") or now, t.get("confirmedAt"), t.get("confirmedBy"),
                  t.get("cancelledAt"), t.get("cancelledReason"), t["id"], now))
            for i in t.get("items") or []:
                product_id = _local_id(conn, "products", i.get("productId"))
                qty = _as_int(i.get("qty"))
                if product_id and qty and qty > 0:
                    conn.execute("""
                        INSERT OR IGNORE INTO stock_transfer_items (id, stock_transfer_id, product_id, item_name, qty)
                        VALUES (?,?,?,?,?)
                    """, (i.get("id") or f"{t['id']}:{product_id}", t["id"], product_id, i.get("itemName") or "", qty))
            applied += 1
        return applied

    def _apply_additions(self, conn: sqlite3.Connection, additions: List[Dict[str, Any]]) -> int:
        now = iso_now()
        applied = 0
        for a in additions:
            number = _as_int(a.get("additionId"))
            local = self._match_numbered(conn, "inventory_additions", "addition_no", a.get("id"), number)
            if local:
                conn.execute("""
                    UPDATE inventory_additions SET addition_no=COALESCE(?, addition_no),
                           canonical_id=COALESCE(?, canonical_id), synced_utc=COALESCE(synced_utc, ?)
                    WHERE id=?
                """, (number, a.get("id"), now, local))
                applied += 1
                continue
            if not a.get("id"):
                continue
            conn.execute("""
                INSERT INTO inventory_additions (id, addition_no, reference_id, total_cost, created_utc, updated_utc,
                                                 canonical_id, synced_utc)
                VALUES (?,?,?,?,?,?,?,?)
            """, (a["id"], number, a.get("referenceId"), a.get("totalCost") or 0, a.get("createdAt") or now,
                  a.get("updatedAt") or now, a["id"], now))
            for i in a.get("items") or []:
                qty = _as_int(i.get("qty"))
                if not qty or qty <= 0:
                    continue
                conn.execute("""
                    INSERT OR IGNORE INTO inventory_addition_items
                      (id, inventory_addition_id, product_id, item_name, cost, price, qty)
                    VALUES (?,?,?,?,?,?,?)
                """, (i.get("id") or f"{a['id']}:{i.get('itemName') or i.get('name')}", a["id"],
                      _local_id(conn, "products", i.get("productId")), i.get("itemName") or i.get("name") or "",
                      i.get("cost") or 0, i.get("price") or 0, qty))
            applied += 1
        return applied

    def _apply_transactions(self, conn: sqlite3.Connection, txs: List[Dict[str, Any]]) -> int:
        now = iso_now()
        applied = 0
        for t in txs:
            number = _as_int(t.get("transactionId"))
            local = self._match_numbered(conn, "transactions", "transaction_no", t.get("id"), number)
            if local:
                conn.execute("""
                    UPDATE transactions SET transaction_no=COALESCE(?, transaction_no),
                           canonical_id=COALESCE(?, canonical_id), synced_utc=COALESCE(synced_utc, ?)
                    WHERE id=?
                """, (number, t.get("id"), now, local))
                applied += 1
                continue
            store_id = _local_id(conn, "stores", t.get("storeId"), "name", t.get("store"))
            if not t.get("id") or not store_id:
                continue
            conn.execute("""
                INSERT INTO transactions (id, transaction_no, store_id, subtotal, tax, total, created_utc,
                                          canonical_id, synced_utc)
                VALUES (?,?,?,?,?,?,?,?,?)
            """, (t["id"], number, store_id, t.get("subtotal") or 0, t.get("tax") or 0, t.get("total") or 0,
                  t.get("createdAt") or t.get("date") or now, t["id"], now))
            for i in t.get("items") or []:
                qty = _as_int(i.get("qty"))
                if not qty or qty <= 0:
                    continue
                conn.execute("""
                    INSERT OR IGNORE INTO transaction_items
                      (id, transaction_id, product_id, item_name, item_price, item_cost, qty)
                    VALUES (?,?,?,?,?,?,?)
                """, (i.get("id") or f"{t['id']}:{i.get('productId')}", t["id"],
                      _local_id(conn, "products", i.get("productId")) or i.get("productId") or "",
                      i.get("itemName") or i.get("name") or "", i.get("itemPrice") or i.get("price") or 0,
                      i.get("itemCost") or 0, qty))
            applied += 1
        return applied


def last_sync_utc(store: LocalStore) -> Optional[str]:
    with store.read() as conn:
        return get_state(conn, "last_sync_utc")
