import sqlite3
import unittest
from unittest import mock

import pos_server
from pos_connectivity import ConnectivityMonitor
from pos_store import LocalStore, store_id_for
from pos_sync import SyncEngine


class ServerTestBase(unittest.TestCase):
    def setUp(self):
        self.store = LocalStore(":memory:", shops=["Klagon Shop", "Teshie Shop"])
        self.engine = SyncEngine(self.store, None, session=mock.Mock(headers={}))
        self.monitor = ConnectivityMonitor(self.store, self.engine, background=False)
        pos_server.configure(self.store, self.engine, self.monitor)
        pos_server.app.config['TESTING'] = True
        self.client = pos_server.app.test_client()
        resp = self.client.post('/api/products', json={'name': 'Rice 5kg', 'cost': 10, 'price': 15,
                                                       'warehouseStock': 50})
        self.assertEqual(resp.status_code, 201)
        self.rice = resp.get_json()['product']['id']

    def tearDown(self):
        self.monitor.close()
        self.store.close()


class ReadRoutesTest(ServerTestBase):
    def test_stores(self):
        names = [s['name'] for s in self.client.get('/api/stores').get_json()['stores']]
        self.assertIn('Warehouse', names)
        self.assertIn('Klagon Shop', names)
        shops = [s['name'] for s in self.client.get('/api/stores?shops_only=1').get_json()['stores']]
        self.assertNotIn('Warehouse', shops)

    def test_products_and_position(self):
        products = self.client.get('/api/products').get_json()['products']
        self.assertEqual([p['name'] for p in products], ['Rice 5kg'])
        position = self.client.get(f'/api/products/{self.rice}/position').get_json()['position']
        self.assertEqual(position['warehouse'], 50)
        self.assertEqual(self.client.get('/api/products/missing/position').status_code, 404)

    def test_status_reports_queue(self):
        status = self.client.get('/api/status').get_json()['sync']
        self.assertFalse(status['online'])
        self.assertEqual(status['unsynced'], 1)


class MutationRoutesTest(ServerTestBase):
    def test_checkout_by_store_name(self):
        resp = self.client.post('/api/checkout', json={
            'storeName': 'Klagon Shop',
            'items': [{'productId': self.rice, 'qty': 2}],
        })
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body['status'], 'success')
        self.assertEqual(body['message'], 'saved locally')
        self.assertEqual(body['transaction']['total'], 33.75)
        txs = self.client.get('/api/transactions', query_string={'storeName': 'Klagon Shop'}).get_json()
        self.assertEqual(len(txs['transactions']), 1)
        self.assertFalse(txs['transactions'][0]['synced'])

    def test_validation_errors_are_400(self):
        resp = self.client.post('/api/checkout', json={'storeName': 'Klagon Shop', 'items': []})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['status'], 'error')
        resp = self.client.post('/api/products', json={'name': 'Rice 5kg', 'cost': 1, 'price': 2})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post('/api/products/bulk', json={'products': 'nope'})
        self.assertEqual(resp.status_code, 400)

    def test_unknown_records_are_404(self):
        resp = self.client.post('/api/checkout', json={'storeName': 'Nowhere', 'items': [{'productId': self.rice, 'qty': 1}]})
        self.assertEqual(resp.status_code, 404)
        resp = self.client.post('/api/transfer/confirm', json={'transferId': 'missing'})
        self.assertEqual(resp.status_code, 404)

    def test_storage_failure_is_500(self):
        with mock.patch('pos_recorder.enqueue', side_effect=sqlite3.OperationalError('disk I/O error')):
            resp = self.client.post('/api/checkout', json={
                'storeId': store_id_for('Klagon Shop'),
                'items': [{'productId': self.rice, 'qty': 1}],
            })
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json()['message'], 'Failed to save locally')
        self.assertEqual(self.client.get('/api/transactions').get_json()['transactions'], [])

    def test_transfer_flow(self):
        resp = self.client.post('/api/transfer', json={
            'targetStore': 'Teshie Shop',
            'items': [{'productId': self.rice, 'qty': 5}],
        })
        self.assertEqual(resp.status_code, 201)
        transfer_id = resp.get_json()['transfer']['id']
        pending = self.client.get('/api/transfers?status=pending').get_json()['transfers']
        self.assertEqual([t['id'] for t in pending], [transfer_id])

        resp = self.client.post('/api/transfer/confirm', json={'transferId': transfer_id, 'confirmedBy': 'Ama'})
        self.assertEqual(resp.get_json()['transfer']['status'], 'confirmed')
        inventory = self.client.get('/api/inventory', query_string={'storeName': 'Teshie Shop'}).get_json()
        self.assertEqual(inventory['inventory'][0]['stock'], 5)

    def test_change_request_flow(self):
        shop = store_id_for('Klagon Shop')
        resp = self.client.post('/api/inventory/request-change', json={
            'storeId': shop, 'productId': self.rice, 'changeType': 'add', 'qty': 4, 'requestedBy': 'Kofi',
        })
        self.assertEqual(resp.status_code, 201)
        change_id = resp.get_json()['change']['id']
        resp = self.client.post('/api/inventory/approve-change', json={'pendingChangeId': change_id})
        self.assertEqual(resp.get_json()['change']['status'], 'approved')
        position = self.client.get(f'/api/products/{self.rice}/position').get_json()['position']
        self.assertEqual((position['warehouse'], position['store_total']), (46, 4))

    def test_remove_product_from_store_requests_review_when_stocked(self):
        self.client.post('/api/inventory/request-change', json={
            'storeName': 'Klagon Shop', 'productId': self.rice, 'changeType': 'add', 'qty': 2,
        })
        change = self.client.get('/api/pending-changes?status=pending').get_json()['changes'][0]
        self.client.post('/api/inventory/approve-change', json={'pendingChangeId': change['id']})

        resp = self.client.delete('/api/inventory', query_string={'storeName': 'Klagon Shop', 'productId': self.rice})
        body = resp.get_json()
        self.assertEqual(body['action'], 'requested')
        self.assertEqual(body['message'], 'removal requested')


class RuntimeTest(ServerTestBase):
    def test_lazy_runtime_starts_probing_once(self):
        monitor = mock.Mock()

        def build(*args, **kwargs):
            pos_server._RUNTIME = pos_server.Runtime(self.store, self.engine, monitor)
            return pos_server._RUNTIME

        with mock.patch.object(pos_server, '_RUNTIME', None), \
                mock.patch.object(pos_server, 'configure', side_effect=build):
            first = pos_server._runtime()
            second = pos_server._runtime()

        self.assertIs(first, second)
        monitor.start.assert_called_once_with()

    def test_injected_runtime_is_not_started(self):
        self.assertIsNone(self.monitor._probe_thread)


class OutboxRoutesTest(ServerTestBase):
    def test_manual_sync_while_offline(self):
        body = self.client.post('/api/sync').get_json()
        self.assertEqual(body['sync']['status'], 'offline')
        self.assertEqual(body['sync']['remaining'], 1)

    def test_outbox_listing_and_discard(self):
        entries = self.client.get('/api/outbox').get_json()['entries']
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]['payload']['name'], 'Rice 5kg')

        resp = self.client.delete(f"/api/outbox/{entries[0]['id']}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.client.get('/api/outbox').get_json()['count'], 0)

    def test_unknown_outbox_entry(self):
        self.assertEqual(self.client.post('/api/outbox/999/retry').status_code, 404)
        self.assertEqual(self.client.delete('/api/outbox/999').status_code, 404)


if __name__ == '__main__':
    unittest.main()
