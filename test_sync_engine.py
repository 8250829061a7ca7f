import json
import unittest

import requests

import pos_recorder as rec
from pos_queries import fetch_sync_queue, fetch_transactions, unsynced_count
from pos_store import LocalStore, enqueue, new_id, store_id_for
from pos_sync import SyncEngine

BASE = "http://server.test"


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = {} if body is None else body
        self.text = json.dumps(self._body)

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"http {self.status_code}", response=self)


class FakeServer:
    """Stands in for requests.Session; keeps what it persisted keyed by client id."""

    def __init__(self):
        self.headers = {}
        self.calls = []
        self.persisted = {}
        self.failures = {}
        self.snapshots = {}
        self.on_get = {}
        self.next_no = 100

    def fail(self, method, path, times=1, status=None, error=None, after_persist=False):
        self.failures[(method, path)] = {"times": times, "status": status, "error": error, "after": after_persist}

    def _failure(self, method, path):
        f = self.failures.get((method, path))
        if not f or f["times"] <= 0:
            return None
        f["times"] -= 1
        return f

    def request(self, method, url, params=None, json=None, timeout=None):
        path = url[len(BASE):]
        self.calls.append((method, path, params, json))
        failure = self._failure(method, path)
        if failure and not failure["after"]:
            if failure["error"]:
                raise failure["error"]
            return FakeResponse(failure["status"], {"error": "nope"})
        body = self._persist(method, path, json or {})
        if failure:
            raise failure["error"] or requests.ConnectionError("response lost")
        return FakeResponse(200, body)

    def _persist(self, method, path, body):
        key = (path, body.get("id"))
        if key not in self.persisted:
            self.next_no += 1
            self.persisted[key] = {"id": f"srv-{self.next_no}", "no": self.next_no}
        saved = self.persisted[key]
        if path == "/api/transactions":
            return {"id": saved["id"], "transactionId": saved["no"]}
        if path == "/api/products" and method == "POST":
            return {"id": saved["id"], "itemId": saved["no"]}
        if path == "/api/transfer":
            return {"success": True, "transferId": saved["no"]}
        return {"success": True}

    def get(self, url, params=None, timeout=None):
        path = url[len(BASE):]
        self.calls.append(("GET", path, params, None))
        hook = self.on_get.pop(path, None)
        if hook:
            hook()
        return FakeResponse(200, self.snapshots.get(path, []))

    def posted(self, path):
        return [c for c in self.calls if c[1] == path and c[0] != "GET"]


class SyncEngineTestBase(unittest.TestCase):
    def setUp(self):
        self.store = LocalStore(":memory:", shops=["Klagon Shop", "Teshie Shop"])
        self.shop = store_id_for("Klagon Shop")
        self.server = FakeServer()
        self.engine = SyncEngine(self.store, BASE, session=self.server, pull=False,
                                 token="secret", device_id="till-1")
        self.rice = rec.create_product(self.store, "Rice 5kg", 10, 15, warehouse_stock=50)["id"]

    def tearDown(self):
        self.store.close()

    def _sell(self, qty=1):
        return rec.record_sale(self.store, self.shop, [{"product_id": self.rice, "qty": qty}])

    def _queue(self):
        with self.store.read() as conn:
            return fetch_sync_queue(conn)


class DrainTest(SyncEngineTestBase):
    def test_three_offline_sales_drain_in_order(self):
        sales = [self._sell() for _ in range(3)]

        result = self.engine.sync()

        self.assertEqual(result["status"], "ok")
        self.assertEqual(result["synced"], 4)
        self.assertEqual(result["remaining"], 0)
        posted = self.server.posted("/api/transactions")
        self.assertEqual([c[3]["id"] for c in posted], [s["id"] for s in sales])
        with self.store.read() as conn:
            self.assertEqual(unsynced_count(conn), 0)
            txs = {t["id"]: t for t in fetch_transactions(conn)}
        for sale in sales:
            saved = self.server.persisted[("/api/transactions", sale["id"])]
            self.assertEqual(txs[sale["id"]]["canonical_id"], saved["id"])
            self.assertEqual(txs[sale["id"]]["transaction_no"], saved["no"])
            self.assertTrue(txs[sale["id"]]["synced"])

    def test_headers_and_product_reconciliation(self):
        self.engine.sync()
        self.assertEqual(self.server.headers["Authorization"], "Bearer secret")
        self.assertEqual(self.server.headers["X-POS-Device"], "till-1")
        with self.store.read() as conn:
            product = conn.execute("SELECT * FROM products WHERE id=?", (self.rice,)).fetchone()
        saved = self.server.persisted[("/api/products", self.rice)]
        self.assertEqual(product["canonical_id"], saved["id"])
        self.assertEqual(product["item_no"], saved["no"])

    def test_references_resolved_at_send_time(self):
        self._sell()
        transfer = rec.create_transfer(self.store, self.shop, [{"product_id": self.rice, "qty": 5}])
        rec.confirm_transfer(self.store, transfer["id"], confirmed_by="Ama")

        self.assertEqual(self.engine.sync()["status"], "ok")

        product_server_id = self.server.persisted[("/api/products", self.rice)]["id"]
        sale_body = self.server.posted("/api/transactions")[0][3]
        self.assertEqual(sale_body["items"][0]["productId"], product_server_id)
        transfer_no = self.server.persisted[("/api/transfer", transfer["id"])]["no"]
        confirm_body = self.server.posted("/api/transfer/confirm")[0][3]
        self.assertEqual(confirm_body["transferId"], transfer_no)
        with self.store.read() as conn:
            row = conn.execute("SELECT transfer_no, synced_utc FROM stock_transfers WHERE id=?",
                               (transfer["id"],)).fetchone()
        self.assertEqual(row["transfer_no"], transfer_no)
        self.assertIsNotNone(row["synced_utc"])

    def test_delete_routes_use_query_params(self):
        beans = rec.create_product(self.store, "Beans", 3, 5)["id"]
        rec.delete_product(self.store, beans)
        self.engine.sync()
        deletes = [c for c in self.server.calls if c[0] == "DELETE"]
        self.assertEqual(deletes[0][1], "/api/products")
        self.assertEqual(deletes[0][2], {"id": self.server.persisted[("/api/products", beans)]["id"]})
        with self.store.read() as conn:
            gone = conn.execute("SELECT 1 FROM products WHERE id=?", (beans,)).fetchone()
        self.assertIsNone(gone)

    def test_deleted_product_with_history_is_kept(self):
        self._sell()
        rec.delete_product(self.store, self.rice)
        self.engine.sync()
        with self.store.read() as conn:
            row = conn.execute("SELECT deleted_utc FROM products WHERE id=?", (self.rice,)).fetchone()
        self.assertIsNotNone(row)
        self.assertIsNotNone(row["deleted_utc"])


class FailureTest(SyncEngineTestBase):
    def test_network_error_stops_drain_and_keeps_order(self):
        sales = [self._sell() for _ in range(3)]
        self.server.fail("POST", "/api/transactions", error=requests.ConnectionError("down"))

        result = self.engine.sync()

        self.assertEqual(result["status"], "deferred")
        self.assertEqual(result["synced"], 1)
        self.assertEqual(result["remaining"], 3)
        self.assertEqual(len(self.server.posted("/api/transactions")), 1)
        head = self._queue()[0]
        self.assertEqual(head["ref_id"], sales[0]["id"])
        self.assertEqual(head["attempts"], 1)
        self.assertIn("down", head["last_error"])
        self.assertEqual(head["status"], "queued")

        result = self.engine.sync()
        self.assertEqual(result["status"], "ok")
        self.assertEqual(result["synced"], 3)
        sent = [c[3]["id"] for c in self.server.posted("/api/transactions")]
        self.assertEqual(sent, [sales[0]["id"]] + [s["id"] for s in sales])

    def test_transient_statuses_defer(self):
        self._sell()
        for status in (500, 503, 429, 408):
            with self.subTest(status=status):
                self.server.fail("POST", "/api/transactions", status=status)
                self.assertEqual(self.engine.sync()["status"], "deferred")
                self.assertEqual(self._queue()[0]["status"], "queued")
        self.assertEqual(self.engine.sync()["status"], "ok")

    def test_rejection_needs_attention_until_retried(self):
        first, second = self._sell(), self._sell()
        self.server.fail("POST", "/api/transactions", status=400)

        result = self.engine.sync()

        self.assertEqual(result["status"], "needs_attention")
        self.assertEqual(result["needs_attention"], 1)
        parked = self._queue()[0]
        self.assertEqual(parked["ref_id"], first["id"])
        self.assertEqual(parked["status"], "needs_attention")
        self.assertTrue(parked["last_error"].startswith("http 400"))

        calls = len(self.server.calls)
        self.assertEqual(self.engine.sync()["status"], "needs_attention")
        self.assertEqual(len(self.server.calls), calls)

        # optimistic local state is kept
        with self.store.read() as conn:
            self.assertEqual(len(fetch_transactions(conn)), 2)

        self.engine.retry_entry(parked["id"])
        result = self.engine.sync()
        self.assertEqual(result["status"], "ok")
        sent = [c[3]["id"] for c in self.server.posted("/api/transactions")]
        self.assertEqual(sent[-2:], [first["id"], second["id"]])

    def test_discard_entry(self):
        sale = self._sell()
        self.server.fail("POST", "/api/transactions", status=422)
        self.engine.sync()
        parked = self._queue()[0]
        self.engine.discard_entry(parked["id"])
        self.assertEqual(self._queue(), [])
        with self.store.read() as conn:
            self.assertEqual(fetch_transactions(conn)[0]["id"], sale["id"])

    def test_unknown_route_needs_attention(self):
        self.engine.sync()
        with self.store.transaction() as conn:
            enqueue(conn, "loyaltyPoints", "create", new_id(), {"points": 5})
        result = self.engine.sync()
        self.assertEqual(result["status"], "needs_attention")
        self.assertIn("no route", self._queue()[0]["last_error"])

    def test_lost_response_replay_is_idempotent(self):
        sale = self._sell()
        self.server.fail("POST", "/api/transactions", after_persist=True)

        self.assertEqual(self.engine.sync()["status"], "deferred")
        self.assertEqual(self.engine.sync()["status"], "ok")

        persisted = [k for k in self.server.persisted if k[0] == "/api/transactions"]
        self.assertEqual(persisted, [("/api/transactions", sale["id"])])
        self.assertEqual(len(self.server.posted("/api/transactions")), 2)
        with self.store.read() as conn:
            tx = fetch_transactions(conn)[0]
        self.assertEqual(tx["canonical_id"], self.server.persisted[("/api/transactions", sale["id"])]["id"])

    def test_unreadable_payload_needs_attention(self):
        self.engine.sync()
        with self.store.transaction() as conn:
            entry_id = enqueue(conn, "transactions", "create", new_id(), {})
            conn.execute("UPDATE sync_queue SET payload_json='{not json' WHERE id=?", (entry_id,))

        result = self.engine.sync()

        self.assertEqual(result["status"], "needs_attention")
        with self.store.read() as conn:
            row = conn.execute("SELECT status, attempts, last_error FROM sync_queue WHERE id=?", (entry_id,)).fetchone()
        self.assertEqual(row["status"], "needs_attention")
        self.assertEqual(row["attempts"], 1)
        self.assertTrue(row["last_error"].startswith("unreadable payload"))
        self.assertEqual(self.server.posted("/api/transactions"), [])
        listed = self._queue()[-1]
        self.assertIsNone(listed["payload"])
        self.assertEqual(listed["payload_raw"], "{not json")


class GuardTest(SyncEngineTestBase):
    def test_concurrent_trigger_is_busy(self):
        self.engine._lock.acquire()
        try:
            result = self.engine.sync()
        finally:
            self.engine._lock.release()
        self.assertEqual(result["status"], "busy")
        self.assertTrue(self.engine._rerun)
        self.assertEqual(self.server.calls, [])

    def test_without_server_everything_stays_queued(self):
        engine = SyncEngine(self.store, None, session=self.server)
        result = engine.sync()
        self.assertEqual(result["status"], "deferred")
        self.assertEqual(result["remaining"], 1)
        self.assertEqual(self.server.calls, [])

    def test_trigger_during_pull_is_drained_before_returning(self):
        self.engine.pull_enabled = True
        inner = []

        def sell_and_trigger():
            self._sell()
            inner.append(self.engine.sync())
        self.server.on_get["/api/stores"] = sell_and_trigger

        result = self.engine.sync()

        self.assertEqual(inner[0]["status"], "busy")
        self.assertEqual(result["status"], "ok")
        self.assertEqual(result["synced"], 2)
        self.assertEqual(result["remaining"], 0)
        self.assertEqual(len(self.server.posted("/api/transactions")), 1)


class PullTest(SyncEngineTestBase):
    def setUp(self):
        super().setUp()
        self.engine.pull_enabled = True

    def test_pull_after_empty_queue(self):
        self.engine.sync()
        server_id = self.server.persisted[("/api/products", self.rice)]["id"]
        self.server.snapshots = {
            "/api/stores": [{"id": "srv-store-1", "name": "Klagon Shop", "location": "Accra"}],
            "/api/products": [
                {"id": server_id, "itemId": 7, "name": "Rice 5kg", "cost": 10, "price": 15, "warehouseStock": 42},
                {"id": "srv-p-9", "itemId": 9, "name": "Salt", "cost": 1, "price": 2, "warehouseStock": 5},
            ],
            "/api/inventory/all": [{"id": "inv-1", "storeId": "srv-store-1", "productId": "srv-p-9", "stock": 6}],
        }

        self.assertEqual(self.engine.sync()["status"], "ok")

        with self.store.read() as conn:
            rice = conn.execute("SELECT * FROM products WHERE id=?", (self.rice,)).fetchone()
            salt = conn.execute("SELECT * FROM products WHERE name='Salt'").fetchone()
            shop = conn.execute("SELECT * FROM stores WHERE id=?", (self.shop,)).fetchone()
            inv = conn.execute("SELECT stock FROM inventories WHERE store_id=? AND product_id=?",
                               (self.shop, "srv-p-9")).fetchone()
        self.assertEqual((rice["warehouse_stock"], rice["item_no"]), (42, 7))
        self.assertEqual(salt["id"], "srv-p-9")
        self.assertEqual(shop["canonical_id"], "srv-store-1")
        self.assertEqual(inv["stock"], 6)

    def test_pull_skipped_while_entries_remain(self):
        self._sell()
        self.server.fail("POST", "/api/transactions", status=503)
        self.engine.sync()
        self.assertFalse([c for c in self.server.calls if c[0] == "GET"])

    def test_sale_during_pull_keeps_local_stock(self):
        self.engine.sync()
        server_id = self.server.persisted[("/api/products", self.rice)]["id"]
        with self.store.transaction() as conn:
            conn.execute("""
                INSERT INTO inventories (id, store_id, product_id, stock, updated_utc)
                VALUES ('inv-local', ?, ?, 5, '2024-01-01T00:00:00Z')
            """, (self.shop, self.rice))
        self.server.snapshots = {
            "/api/inventory/all": [{"id": "inv-1", "storeId": self.shop, "productId": server_id, "stock": 5}],
        }
        self.server.on_get["/api/inventory/all"] = lambda: self._sell(qty=2)

        result = self.engine.sync()

        self.assertEqual(result["remaining"], 1)
        with self.store.read() as conn:
            stock = conn.execute("SELECT stock FROM inventories WHERE store_id=? AND product_id=?",
                                 (self.shop, self.rice)).fetchone()["stock"]
        self.assertEqual(stock, 3)
        pulled_after = [c[1] for c in self.server.calls if c[0] == "GET"]
        self.assertEqual(pulled_after[-1], "/api/inventory/all")


if __name__ == "__main__":
    unittest.main()
