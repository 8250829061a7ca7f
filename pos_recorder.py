#!/usr/bin/env python3
# Mutation recorder: every user action = local write + one sync-queue entry, one transaction
import datetime as dt
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

import pos_config as cfg
from pos_errors import LocalValidationError, RecordNotFound
from pos_store import LocalStore, enqueue, iso_now, new_id, next_number

logger = logging.getLogger(__name__)

CHANGE_TYPES = ("add", "remove", "adjust", "return", "remove_product")
RETURN_TYPES = ("return", "remove_product")
DEFAULT_RESTOCK_QTY = 10
FIRST_ADDITION_NO = 1001


# ---------- VALIDATION HELPERS ----------
def _as_int(value: Any, field: str, minimum: int = 1) -> int:
    if isinstance(value, bool) or value in (None, ""):
        raise LocalValidationError(f"{field} is required")
    try:
        num = float(value)
        whole = num == int(num)
    except (TypeError, ValueError, OverflowError):
        raise LocalValidationError(f"{field} must be a number")
    if not whole:
        raise LocalValidationError(f"{field} must be a whole number")
    if num < minimum:
        if minimum == 1:
            raise LocalValidationError(f"{field} must be positive")
        raise LocalValidationError(f"{field} must be at least {minimum}")
    return int(num)


def _as_money(value: Any, field: str, default: Optional[float] = None) -> Optional[float]:
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        raise LocalValidationError(f"{field} must be a number")
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise LocalValidationError(f"{field} must be a number")
    if num < 0:
        raise LocalValidationError(f"{field} cannot be negative")
    return round(num, 2)


def _clean_name(value: Any, field: str = "name") -> str:
    name = str(value or "").strip()
    if not name:
        raise LocalValidationError(f"{field} is required")
    return name


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) not in (None, ""):
            return mapping[key]
    return None


# ---------- LOOKUPS ----------
def _store(conn: sqlite3.Connection, store_id: Optional[str], allow_warehouse: bool = False) -> sqlite3.Row:
    if not store_id:
        raise LocalValidationError("store is required")
    row = conn.execute("SELECT * FROM stores WHERE id=?", (store_id,)).fetchone()
    if row is None:
        raise RecordNotFound(f"unknown store: {store_id}")
    if row["is_warehouse"] and not allow_warehouse:
        raise LocalValidationError(f"{row['name']} cannot be used here")
    return row


def _warehouse(conn: sqlite3.Connection) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM stores WHERE is_warehouse=1 ORDER BY name LIMIT 1").fetchone()
    if row is None:
        raise RecordNotFound(f"{cfg.WAREHOUSE_NAME} store is missing")
    return row


def _product(conn: sqlite3.Connection, product_id: Optional[str], include_deleted: bool = False) -> sqlite3.Row:
    if not product_id:
        raise LocalValidationError("product is required")
    row = conn.execute("SELECT * FROM products WHERE id=?", (product_id,)).fetchone()
    if row is None or (row["deleted_utc"] and not include_deleted):
        raise RecordNotFound(f"unknown product: {product_id}")
    return row


def _inventory(conn: sqlite3.Connection, store_id: str, product_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM inventories WHERE store_id=? AND product_id=?", (store_id, product_id)
    ).fetchone()


def _change(conn: sqlite3.Connection, change_id: str) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM pending_changes WHERE id=?", (change_id,)).fetchone()
    if row is None:
        raise RecordNotFound(f"unknown pending change: {change_id}")
    return row


def _transfer(conn: sqlite3.Connection, transfer_id: str) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM stock_transfers WHERE id=?", (transfer_id,)).fetchone()
    if row is None:
        raise RecordNotFound(f"unknown transfer: {transfer_id}")
    return row


def _require_status(row: sqlite3.Row, expected: str, what: str):
    if row["status"] != expected:
        raise LocalValidationError(f"cannot change {what}: status is {row['status']}")


# ---------- STOCK PRIMITIVES ----------
def _add_store_stock(conn: sqlite3.Connection, store_id: str, product_id: str, qty: int, now: str):
    conn.execute("""
        INSERT INTO inventories (id, store_id, product_id, stock, updated_utc) VALUES (?,?,?,?,?)
        ON CONFLICT(store_id, product_id) DO UPDATE SET
          stock = stock + excluded.stock,
          updated_utc = excluded.updated_utc
    """, (new_id(), store_id, product_id, qty, now))


def _take_store_stock(conn: sqlite3.Connection, store_id: str, product_id: str, qty: int, now: str) -> int:
    """Decrement a store's stock, clamped at zero; returns units actually removed."""
    row = _inventory(conn, store_id, product_id)
    if row is None:
        return 0
    taken = min(int(row["stock"]), qty)
    conn.execute("""
        UPDATE inventories SET stock = MAX(0, stock - ?), updated_utc=? WHERE id=?
    """, (qty, now, row["id"]))
    return taken


def _set_store_stock(conn: sqlite3.Connection, store_id: str, product_id: str, qty: int, now: str):
    conn.execute("""
        INSERT INTO inventories (id, store_id, product_id, stock, updated_utc) VALUES (?,?,?,?,?)
        ON CONFLICT(store_id, product_id) DO UPDATE SET
          stock = excluded.stock,
          updated_utc = excluded.updated_utc
    """, (new_id(), store_id, product_id, max(0, qty), now))


def _add_warehouse_stock(conn: sqlite3.Connection, product_id: str, qty: int, now: str):
    conn.execute("""
        UPDATE products SET warehouse_stock = MAX(0, warehouse_stock + ?), updated_utc=? WHERE id=?
    """, (qty, now, product_id))


def _take_warehouse_stock(conn: sqlite3.Connection, product_id: str, qty: int, now: str):
    conn.execute("""
        UPDATE products SET warehouse_stock = MAX(0, warehouse_stock - ?), updated_utc=? WHERE id=?
    """, (qty, now, product_id))


def _row_dict(conn: sqlite3.Connection, table: str, record_id: str) -> Dict[str, Any]:
    row = conn.execute(f"SELECT * FROM {table} WHERE id=?", (record_id,)).fetchone()
    return dict(row) if row else {}


# ---------- SALES ----------
def record_sale(store: LocalStore, store_id: str, cart: Iterable[Dict[str, Any]],
                tax_rate: float = cfg.POS_TAX_RATE) -> Dict[str, Any]:
    """
    Record a completed checkout at ``store_id``.

    cart = [ {'product_id': '...', 'qty': 2, 'price': 10.0, 'cost': 6.0}, ... ]

    price and cost default to the product's current values. The store's
    inventory is decremented per line, never below zero.
    """
    lines = list(cart or [])
    if not lines:
        raise LocalValidationError("cart is empty")

    with store.transaction() as conn:
        shop = _store(conn, store_id)
        now = iso_now()
        tx_id = new_id()
        items: List[Dict[str, Any]] = []
        for line in lines:
            product = _product(conn, _first(line, "product_id", "productId", "id"))
            qty = _as_int(line.get("qty"), "qty")
            price = _as_money(_first(line, "price", "itemPrice"), "price", float(product["price"]))
            cost = _as_money(_first(line, "cost", "itemCost"), "cost", float(product["cost"]))
            items.append({
                "id": new_id(),
                "productId": product["id"],
                "itemName": line.get("name") or product["name"],
                "itemPrice": price,
                "itemCost": cost,
                "qty": qty,
            })

        subtotal = round(sum(i["itemPrice"] * i["qty"] for i in items), 2)
        tax = round(subtotal * tax_rate, 2)
        total = round(subtotal + tax, 2)
        tx_no = next_number(conn, "transactions", "transaction_no")

        conn.execute("""
            INSERT INTO transactions (id, transaction_no, store_id, subtotal, tax, total, created_utc)
            VALUES (?,?,?,?,?,?,?)
        """, (tx_id, tx_no, shop["id"], subtotal, tax, total, now))
        for i in items:
            conn.execute("""
                INSERT INTO transaction_items (id, transaction_id, product_id, item_name, item_price, item_cost, qty)
                VALUES (?,?,?,?,?,?,?)
            """, (i["id"], tx_id, i["productId"], i["itemName"], i["itemPrice"], i["itemCost"], i["qty"]))
            _take_store_stock(conn, shop["id"], i["productId"], i["qty"], now)

        payload = {
            "id": tx_id,
            "transactionId": tx_no,
            "storeId": shop["id"],
            "storeName": shop["name"],
            "subtotal": subtotal,
            "tax": tax,
            "total": total,
            "createdAt": now,
            "items": items,
        }
        enqueue(conn, "transactions", "create", tx_id, payload)
        result = _row_dict(conn, "transactions", tx_id)
        result["items"] = items

    logger.info("Recorded sale %s at %s: %d line(s), total %.2f", tx_no, shop["name"], len(items), total)
    return result


# ---------- PRODUCTS ----------
def create_product(store: LocalStore, name: str, cost: Any, price: Any, warehouse_stock: Any = 0,
                   restock_qty: Any = DEFAULT_RESTOCK_QTY) -> Dict[str, Any]:
    name = _clean_name(name)
    cost = _as_money(cost, "cost", 0.0)
    price = _as_money(price, "price", 0.0)
    stock = _as_int(warehouse_stock, "warehouse_stock", minimum=0) if warehouse_stock not in (None, "") else 0
    restock = _as_int(restock_qty, "restock_qty", minimum=0) if restock_qty not in (None, "") else DEFAULT_RESTOCK_QTY

    with store.transaction() as conn:
        if conn.execute("SELECT 1 FROM products WHERE name=?", (name,)).fetchone():
            raise LocalValidationError(f"product already exists: {name}")
        now = iso_now()
        product_id = new_id()
        item_no = next_number(conn, "products", "item_no")
        conn.execute("""
            INSERT INTO products (id, item_no, name, cost, price, warehouse_stock, restock_qty, updated_utc)
            VALUES (?,?,?,?,?,?,?,?)
        """, (product_id, item_no, name, cost, price, stock, restock, now))
        enqueue(conn, "products", "create", product_id, {
            "id": product_id,
            "itemId": item_no,
            "name": name,
            "cost": cost,
            "price": price,
            "warehouseStock": stock,
            "restockQty": restock,
        })
        return _row_dict(conn, "products", product_id)


def import_products(store: LocalStore, rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Upsert products by name; known names get cost/price overrides and a warehouse top-up."""
    parsed = []
    for row in rows or []:
        qty = _first(row, "qty", "warehouse_stock", "warehouseStock", "stock")
        restock = _first(row, "restock_qty", "restockQty")
        parsed.append({
            "name": _clean_name(row.get("name")),
            "cost": _as_money(row.get("cost"), "cost"),
            "price": _as_money(row.get("price"), "price"),
            "qty": _as_int(qty, "qty", minimum=0) if qty is not None else 0,
            "restock_qty": _as_int(restock, "restock_qty", minimum=0) if restock is not None else None,
        })
    if not parsed:
        raise LocalValidationError("no products to import")

    created, updated = 0, 0
    ids: List[str] = []
    with store.transaction() as conn:
        now = iso_now()
        wire = []
        for p in parsed:
            existing = conn.execute("SELECT * FROM products WHERE name=?", (p["name"],)).fetchone()
            if existing is not None:
                product_id = existing["id"]
                conn.execute("""
                    UPDATE products SET
                      cost = COALESCE(?, cost),
                      price = COALESCE(?, price),
                      restock_qty = COALESCE(?, restock_qty),
                      warehouse_stock = warehouse_stock + ?,
                      deleted_utc = NULL,
                      updated_utc = ?
                    WHERE id=?
                """, (p["cost"], p["price"], p["restock_qty"], p["qty"], now, product_id))
                updated += 1
            else:
                product_id = new_id()
                conn.execute("""
                    INSERT INTO products (id, item_no, name, cost, price, warehouse_stock, restock_qty, updated_utc)
                    VALUES (?,?,?,?,?,?,?,?)
                """, (
                    product_id, next_number(conn, "products", "item_no"), p["name"],
                    p["cost"] or 0.0, p["price"] or 0.0, p["qty"],
                    DEFAULT_RESTOCK_QTY if p["restock_qty"] is None else p["restock_qty"], now,
                ))
                created += 1
            ids.append(product_id)
            wire.append({
                "id": product_id,
                "name": p["name"],
                "cost": p["cost"],
                "price": p["price"],
                "qty": p["qty"],
                "restockQty": p["restock_qty"],
            })
        enqueue(conn, "products", "bulk_create", None, {"products": wire})

    logger.info("Imported %d product(s): %d new, %d updated", len(ids), created, updated)
    return {"created": created, "updated": updated, "ids": ids}


def restock_product(store: LocalStore, product_id: str, qty: Any, cost: Any = None, price: Any = None) -> Dict[str, Any]:
    qty = _as_int(qty, "qty")
    cost = _as_money(cost, "cost")
    price = _as_money(price, "price")
    with store.transaction() as conn:
        product = _product(conn, product_id)
        now = iso_now()
        conn.execute("""
            UPDATE products SET
              warehouse_stock = warehouse_stock + ?,
              cost = COALESCE(?, cost),
              price = COALESCE(?, price),
              updated_utc = ?
            WHERE id=?
        """, (qty, cost, price, now, product["id"]))
        enqueue(conn, "products", "update", product["id"], {
            "id": product["id"],
            "productId": product["id"],
            "qty": qty,
            "cost": cost if cost is not None else float(product["cost"]),
            "price": price if price is not None else float(product["price"]),
        })
        return _row_dict(conn, "products", product["id"])


def delete_product(store: LocalStore, product_id: str) -> Dict[str, Any]:
    """Soft delete; the row is purged once the server confirms and nothing references it."""
    with store.transaction() as conn:
        product = _product(conn, product_id)
        now = iso_now()
        conn.execute("UPDATE products SET deleted_utc=?, updated_utc=? WHERE id=?", (now, now, product["id"]))
        enqueue(conn, "products", "delete", product["id"], {"id": product["id"], "name": product["name"]})
        return _row_dict(conn, "products", product["id"])


# ---------- WAREHOUSE STOCK-IN ----------
def _next_reference_id(conn: sqlite3.Connection, when: dt.datetime) -> str:
    prefix = f"INV-{when:%Y%m}-"
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM inventory_additions WHERE reference_id LIKE ?", (prefix + "%",)
    ).fetchone()
    return f"{prefix}{int(row['n']) + 1:03d}"


def record_inventory_addition(store: LocalStore, items: Iterable[Dict[str, Any]],
                              reference_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Record a warehouse stock-in batch.

    Warehouse quantities are left alone locally; the server applies the
    increment and the next pull brings the authoritative figure back.
    """
    lines = list(items or [])
    if not lines:
        raise LocalValidationError("at least one item is required")

    with store.transaction() as conn:
        now = iso_now()
        addition_id = new_id()
        ref = (reference_id or "").strip() or _next_reference_id(conn, dt.datetime.utcnow())
        wire = []
        for line in lines:
            product_id = _first(line, "product_id", "productId")
            if product_id:
                product = _product(conn, product_id)
            else:
                product = conn.execute(
                    "SELECT * FROM products WHERE name=? AND deleted_utc IS NULL",
                    (_clean_name(line.get("name")),),
                ).fetchone()
            wire.append({
                "id": new_id(),
                "productId": product["id"] if product else None,
                "name": product["name"] if product else _clean_name(line.get("name")),
                "cost": _as_money(line.get("cost"), "cost", float(product["cost"]) if product else 0.0),
                "price": _as_money(line.get("price"), "price", float(product["price"]) if product else 0.0),
                "qty": _as_int(line.get("qty"), "qty"),
            })
        total_cost = round(sum(i["cost"] * i["qty"] for i in wire), 2)
        addition_no = next_number(conn, "inventory_additions", "addition_no", start=FIRST_ADDITION_NO)

        conn.execute("""
            INSERT INTO inventory_additions (id, addition_no, reference_id, total_cost, created_utc, updated_utc)
            VALUES (?,?,?,?,?,?)
        """, (addition_id, addition_no, ref, total_cost, now, now))
        conn.executemany("""
            INSERT INTO inventory_addition_items (id, inventory_addition_id, product_id, item_name, cost, price, qty)
            VALUES (?,?,?,?,?,?,?)
        """, [(i["id"], addition_id, i["productId"], i["name"], i["cost"], i["price"], i["qty"]) for i in wire])

        enqueue(conn, "inventoryAdditions", "create", addition_id, {
            "id": addition_id,
            "additionId": addition_no,
            "referenceId": ref,
            "totalCost": total_cost,
            "createdAt": now,
            "items": wire,
        })
        result = _row_dict(conn, "inventory_additions", addition_id)
        result["items"] = wire
        return result


# ---------- TRANSFERS ----------
def create_transfer(store: LocalStore, to_store_id: str, items: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Reserve warehouse stock for a shop; the shop only receives it on confirmation."""
    lines = list(items or [])
    if not lines:
        raise LocalValidationError("at least one item is required")

    with store.transaction() as conn:
        dest = _store(conn, to_store_id)
        now = iso_now()
        requested: Dict[str, int] = {}
        products: Dict[str, sqlite3.Row] = {}
        for line in lines:
            product = _product(conn, _first(line, "product_id", "productId", "id"))
            products[product["id"]] = product
            requested[product["id"]] = requested.get(product["id"], 0) + _as_int(line.get("qty"), "qty")
        for product_id, qty in requested.items():
            available = int(products[product_id]["warehouse_stock"])
            if qty > available:
                raise LocalValidationError(
                    f"insufficient warehouse stock for {products[product_id]['name']}: {available} available, {qty} requested"
                )

        transfer_id = new_id()
        transfer_no = next_number(conn, "stock_transfers", "transfer_no")
        conn.execute("""
            INSERT INTO stock_transfers (id, transfer_no, from_store, to_store_id, status, created_utc, updated_utc)
            VALUES (?,?,?,?,'pending',?,?)
        """, (transfer_id, transfer_no, cfg.WAREHOUSE_NAME, dest["id"], now, now))
        wire = []
        for product_id, qty in requested.items():
            item = {"id": new_id(), "productId": product_id, "itemName": products[product_id]["name"], "qty": qty}
            conn.execute("""
                INSERT INTO stock_transfer_items (id, stock_transfer_id, product_id, item_name, qty)
                VALUES (?,?,?,?,?)
            """, (item["id"], transfer_id, product_id, item["itemName"], qty))
            _take_warehouse_stock(conn, product_id, qty, now)
            wire.append(item)

        enqueue(conn, "stockTransfers", "create", transfer_id, {
            "id": transfer_id,
            "transferId": transfer_no,
            "fromStore": cfg.WAREHOUSE_NAME,
            "targetStore": dest["name"],
            "storeId": dest["id"],
            "createdAt": now,
            "items": wire,
        })
        result = _row_dict(conn, "stock_transfers", transfer_id)
        result["items"] = wire

    logger.info("Transfer %s to %s pending: %d line(s)", transfer_no, dest["name"], len(wire))
    return result


def _transfer_items(conn: sqlite3.Connection, transfer_id: str) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM stock_transfer_items WHERE stock_transfer_id=?", (transfer_id,)
    ).fetchall()


def confirm_transfer(store: LocalStore, transfer_id: str, confirmed_by: Optional[str] = None) -> Dict[str, Any]:
    with store.transaction() as conn:
        transfer = _transfer(conn, transfer_id)
        _require_status(transfer, "pending", "transfer")
        now = iso_now()
        for item in _transfer_items(conn, transfer["id"]):
            _add_store_stock(conn, transfer["to_store_id"], item["product_id"], int(item["qty"]), now)
        conn.execute("""
            UPDATE stock_transfers SET status='confirmed', confirmed_utc=?, confirmed_by=?, updated_utc=? WHERE id=?
        """, (now, confirmed_by, now, transfer["id"]))
        enqueue(conn, "stockTransfers", "confirm", transfer["id"], {
            "id": transfer["id"],
            "transferId": transfer["transfer_no"],
            "confirmedBy": confirmed_by,
        })
        return _row_dict(conn, "stock_transfers", transfer["id"])


def cancel_transfer(store: LocalStore, transfer_id: str, reason: Optional[str] = None,
                    cancelled_by: Optional[str] = None) -> Dict[str, Any]:
    with store.transaction() as conn:
        transfer = _transfer(conn, transfer_id)
        _require_status(transfer, "pending", "transfer")
        now = iso_now()
        for item in _transfer_items(conn, transfer["id"]):
            _add_warehouse_stock(conn, item["product_id"], int(item["qty"]), now)
        conn.execute("""
            UPDATE stock_transfers SET status='cancelled', cancelled_utc=?, cancelled_reason=?, updated_utc=? WHERE id=?
        """, (now, reason, now, transfer["id"]))
        enqueue(conn, "stockTransfers", "cancel", transfer["id"], {
            "id": transfer["id"],
            "transferId": transfer["transfer_no"],
            "reason": reason,
            "cancelledBy": cancelled_by,
        })
        return _row_dict(conn, "stock_transfers", transfer["id"])


# ---------- PENDING CHANGES (approval workflow) ----------
def request_change(store: LocalStore, store_id: str, product_id: str, change_type: str, qty: Any,
                   new_cost: Any = None, new_price: Any = None, reason: Optional[str] = None,
                   requested_by: Optional[str] = None) -> Dict[str, Any]:
    """Record a stock change request; nothing moves until it is approved."""
    if change_type not in CHANGE_TYPES:
        raise LocalValidationError(f"unknown change type: {change_type}")
    # adjust carries a target level, which may be zero
    qty = _as_int(qty, "qty", minimum=0 if change_type in ("adjust", "remove_product") else 1)
    new_cost = _as_money(new_cost, "new_cost")
    new_price = _as_money(new_price, "new_price")

    with store.transaction() as conn:
        shop = _store(conn, store_id)
        product = _product(conn, product_id)
        now = iso_now()
        change_id = new_id()
        conn.execute("""
            INSERT INTO pending_changes (id, product_id, store_id, change_type, qty, new_cost, new_price,
                                         reason, status, requested_by, created_utc, updated_utc)
            VALUES (?,?,?,?,?,?,?,?,'pending',?,?,?)
        """, (change_id, product["id"], shop["id"], change_type, qty, new_cost, new_price,
              reason, requested_by, now, now))
        enqueue(conn, "pendingChanges", "create", change_id, {
            "id": change_id,
            "productId": product["id"],
            "storeId": shop["id"],
            "storeName": shop["name"],
            "changeType": change_type,
            "qty": qty,
            "newCost": new_cost,
            "newPrice": new_price,
            "reason": reason,
            "requestedBy": requested_by,
        })
        return _row_dict(conn, "pending_changes", change_id)


def _apply_change(conn: sqlite3.Connection, change: sqlite3.Row, now: str):
    kind = change["change_type"]
    store_id, product_id, qty = change["store_id"], change["product_id"], int(change["qty"])
    _product(conn, product_id, include_deleted=True)

    if kind == "add":
        _take_warehouse_stock(conn, product_id, qty, now)
        _add_store_stock(conn, store_id, product_id, qty, now)
    elif kind == "remove":
        _take_store_stock(conn, store_id, product_id, qty, now)
    elif kind == "return":
        row = _inventory(conn, store_id, product_id)
        on_hand = int(row["stock"]) if row is not None else 0
        if on_hand < qty:
            raise LocalValidationError(f"insufficient store stock: only {on_hand} units available")
        _take_store_stock(conn, store_id, product_id, qty, now)
        _add_warehouse_stock(conn, product_id, qty, now)
    elif kind == "remove_product":
        row = _inventory(conn, store_id, product_id)
        if row is not None:
            _add_warehouse_stock(conn, product_id, int(row["stock"]), now)
            conn.execute("DELETE FROM inventories WHERE id=?", (row["id"],))
    elif kind == "adjust":
        row = _inventory(conn, store_id, product_id)
        current = int(row["stock"]) if row is not None else 0
        delta = qty - current
        if delta > 0:
            _take_warehouse_stock(conn, product_id, delta, now)
        elif delta < 0:
            _add_warehouse_stock(conn, product_id, -delta, now)
        _set_store_stock(conn, store_id, product_id, qty, now)
        if change["new_cost"] is not None or change["new_price"] is not None:
            conn.execute("""
                UPDATE products SET cost = COALESCE(?, cost), price = COALESCE(?, price), updated_utc=? WHERE id=?
            """, (change["new_cost"], change["new_price"], now, product_id))
    else:
        raise LocalValidationError(f"unknown change type: {kind}")


def approve_change(store: LocalStore, change_id: str, reviewed_by: Optional[str] = None) -> Dict[str, Any]:
    with store.transaction() as conn:
        change = _change(conn, change_id)
        _require_status(change, "pending", "pending change")
        now = iso_now()
        _apply_change(conn, change, now)
        conn.execute("""
            UPDATE pending_changes SET status='approved', reviewed_by=?, reviewed_utc=?, updated_utc=? WHERE id=?
        """, (reviewed_by, now, now, change["id"]))
        enqueue(conn, "pendingChanges", "approve", change["id"], {
            "id": change["id"],
            "pendingChangeId": change["id"],
            "reviewedBy": reviewed_by,
        })
        result = _row_dict(conn, "pending_changes", change["id"])

    logger.info("Approved %s change %s (qty %s)", change["change_type"], change["id"], change["qty"])
    return result


def reject_change(store: LocalStore, change_id: str, reviewed_by: Optional[str] = None,
                  reason: Optional[str] = None) -> Dict[str, Any]:
    with store.transaction() as conn:
        change = _change(conn, change_id)
        _require_status(change, "pending", "pending change")
        now = iso_now()
        conn.execute("""
            UPDATE pending_changes SET status='rejected', reviewed_by=?, reviewed_utc=?,
                   reason=COALESCE(?, reason), updated_utc=?
            WHERE id=?
        """, (reviewed_by, now, reason, now, change["id"]))
        enqueue(conn, "pendingChanges", "reject", change["id"], {
            "id": change["id"],
            "pendingChangeId": change["id"],
            "reviewedBy": reviewed_by,
            "reason": reason,
        })
        return _row_dict(conn, "pending_changes", change["id"])


def cancel_change(store: LocalStore, change_id: str, requested_by: Optional[str] = None) -> Dict[str, Any]:
    with store.transaction() as conn:
        change = _change(conn, change_id)
        _require_status(change, "pending", "pending change")
        now = iso_now()
        conn.execute("UPDATE pending_changes SET status='cancelled', updated_utc=? WHERE id=?", (now, change["id"]))
        enqueue(conn, "pendingChanges", "cancel", change["id"], {
            "id": change["id"],
            "pendingChangeId": change["id"],
            "requestedBy": requested_by,
        })
        return _row_dict(conn, "pending_changes", change["id"])


def confirm_return(store: LocalStore, change_id: str) -> Dict[str, Any]:
    """Warehouse acknowledges receipt of returned stock."""
    with store.transaction() as conn:
        change = _change(conn, change_id)
        if change["change_type"] not in RETURN_TYPES:
            raise LocalValidationError(f"not a return: {change['change_type']}")
        _require_status(change, "approved", "return")
        shop = _store(conn, change["store_id"])
        now = iso_now()
        conn.execute("UPDATE pending_changes SET status='completed', updated_utc=? WHERE id=?", (now, change["id"]))
        enqueue(conn, "pendingChanges", "update", change["id"], {
            "id": change["id"],
            "action": "confirm-return",
            "pendingChangeId": change["id"],
            "productId": change["product_id"],
            "storeId": shop["id"],
            "storeName": shop["name"],
        })
        return _row_dict(conn, "pending_changes", change["id"])


def remove_product_from_store(store: LocalStore, store_id: str, product_id: str,
                              requested_by: Optional[str] = None, reason: Optional[str] = None) -> Dict[str, Any]:
    """
    Take a product off a shop's list.

    Stock still on the shelf has to go back through the approval workflow,
    so a remove_product request is raised; an empty row is dropped directly.
    """
    with store.transaction() as conn:
        shop = _store(conn, store_id)
        row = _inventory(conn, shop["id"], product_id)
        if row is None:
            raise RecordNotFound(f"{shop['name']} does not stock product {product_id}")
        if int(row["stock"]) > 0:
            change = request_change(
                store, shop["id"], product_id, "remove_product", int(row["stock"]),
                reason=reason or "Remove product from store", requested_by=requested_by,
            )
            return {"action": "requested", "change": change}
        conn.execute("DELETE FROM inventories WHERE id=?", (row["id"],))
        enqueue(conn, "inventories", "delete", row["id"], {
            "id": row["id"],
            "productId": product_id,
            "storeId": shop["id"],
            "storeName": shop["name"],
        })
        return {"action": "removed", "inventory": dict(row)}
