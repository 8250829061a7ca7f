from flask import Flask, request, jsonify
import os
import logging
import threading
from typing import Any, Dict, Optional

import pos_config as cfg
import pos_queries as q
import pos_recorder as rec
from pos_connectivity import ConnectivityMonitor
from pos_errors import LocalStorageError, LocalValidationError, RecordNotFound
from pos_store import LocalStore
from pos_sync import SyncEngine

app = Flask(__name__)

try:
    app.logger.setLevel(getattr(logging, cfg.POS_LOG_LEVEL, logging.INFO))
except (TypeError, ValueError):
    app.logger.setLevel(logging.INFO)
logging.getLogger('werkzeug').setLevel(getattr(logging, cfg.POS_LOG_LEVEL, logging.INFO))


class Runtime:
    """The store, sync engine and connectivity monitor one terminal process serves."""

    def __init__(self, store: LocalStore, engine: SyncEngine, monitor: ConnectivityMonitor):
        self.store = store
        self.engine = engine
        self.monitor = monitor


_RUNTIME: Optional[Runtime] = None
_RUNTIME_LOCK = threading.Lock()


def configure(store: Optional[LocalStore] = None, engine: Optional[SyncEngine] = None,
              monitor: Optional[ConnectivityMonitor] = None) -> Runtime:
    """Install the runtime used by the routes; missing parts are built from configuration."""
    global _RUNTIME
    with _RUNTIME_LOCK:
        store = store or LocalStore(cfg.POS_DB_PATH, cfg.POS_SCHEMA_PATH)
        engine = engine or SyncEngine(store, cfg.POS_API_BASE)
        monitor = monitor or ConnectivityMonitor(store, engine)
        _RUNTIME = Runtime(store, engine, monitor)
        return _RUNTIME


def _runtime() -> Runtime:
    """The installed runtime; built from configuration and probing on first use."""
    if _RUNTIME is None:
        configure().monitor.start()
    return _RUNTIME


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _saved(message: str = 'saved locally', **payload):
    out = {'status': 'success', 'message': message}
    out.update(payload)
    return jsonify(out)


def _store_id(data: Dict[str, Any]) -> Optional[str]:
    """Accept either a store id or a store name from the UI."""
    store_id = data.get('storeId') or data.get('store_id')
    if store_id:
        return store_id
    name = data.get('storeName') or data.get('targetStore') or data.get('store')
    if not name:
        return None
    with _runtime().store.read() as conn:
        row = conn.execute("SELECT id FROM stores WHERE name=?", (name,)).fetchone()
    if row is None:
        raise RecordNotFound(f'unknown store: {name}')
    return row['id']


def _read(fn, *args, **kwargs):
    with _runtime().store.read() as conn:
        return fn(conn, *args, **kwargs)


@app.errorhandler(LocalValidationError)
def _validation_error(exc):
    return jsonify({'status': 'error', 'message': str(exc)}), 400


@app.errorhandler(RecordNotFound)
def _not_found(exc):
    return jsonify({'status': 'error', 'message': str(exc)}), 404


@app.errorhandler(LocalStorageError)
def _storage_error(exc):
    app.logger.error('Local storage failure: %s', exc.cause or exc)
    return jsonify({'status': 'error', 'message': 'Failed to save locally'}), 500


# ---------- STATUS & SYNC ----------
@app.route('/api/status')
def api_status():
    return jsonify({'status': 'success', 'sync': _runtime().monitor.status()})


@app.route('/api/sync', methods=['POST'])
def api_sync():
    """Manual "sync now"; the summary is returned even when nothing could be sent."""
    result = _runtime().monitor.sync_now()
    app.logger.info('Manual sync: %s', result)
    return jsonify({'status': 'success', 'sync': result})


@app.route('/api/outbox')
def api_outbox():
    rows = _read(q.fetch_sync_queue, request.args.get('status') or None)
    return jsonify({'status': 'success', 'entries': rows, 'count': len(rows)})


@app.route('/api/outbox/<int:entry_id>/retry', methods=['POST'])
def api_outbox_retry(entry_id: int):
    entry = _runtime().engine.retry_entry(entry_id)
    return jsonify({'status': 'success', 'entry': entry})


@app.route('/api/outbox/<int:entry_id>', methods=['DELETE'])
def api_outbox_discard(entry_id: int):
    entry = _runtime().engine.discard_entry(entry_id)
    return jsonify({'status': 'success', 'entry': entry})


# ---------- READS ----------
@app.route('/api/products')
def api_products():
    include_deleted = request.args.get('include_deleted') == '1'
    return jsonify({'status': 'success', 'products': _read(q.fetch_products, include_deleted)})


@app.route('/api/products/low-stock')
def api_products_low_stock():
    data = dict(request.args)
    threshold = request.args.get('threshold', type=int) or q.LOW_STOCK_THRESHOLD
    rows = _read(q.fetch_low_stock_products, _store_id(data), threshold)
    return jsonify({'status': 'success', 'products': rows})


@app.route('/api/products/<product_id>/position')
def api_product_position(product_id: str):
    position = _read(q.stock_position, product_id)
    if not position:
        return jsonify({'status': 'error', 'message': 'Product not found'}), 404
    return jsonify({'status': 'success', 'position': position})


@app.route('/api/stores')
def api_stores():
    include_warehouse = request.args.get('shops_only') != '1'
    return jsonify({'status': 'success', 'stores': _read(q.fetch_stores, include_warehouse)})


@app.route('/api/inventory')
def api_inventory():
    return jsonify({'status': 'success', 'inventory': _read(q.fetch_inventory, _store_id(dict(request.args)))})


@app.route('/api/transactions')
def api_transactions():
    rows = _read(q.fetch_transactions, _store_id(dict(request.args)), request.args.get('limit', type=int))
    return jsonify({'status': 'success', 'transactions': rows})


@app.route('/api/pending-changes')
def api_pending_changes():
    rows = _read(q.fetch_pending_changes, request.args.get('status') or None, _store_id(dict(request.args)))
    return jsonify({'status': 'success', 'changes': rows})


@app.route('/api/transfers')
def api_transfers():
    return jsonify({'status': 'success', 'transfers': _read(q.fetch_transfers, request.args.get('status') or None)})


@app.route('/api/additions')
def api_additions():
    return jsonify({'status': 'success', 'additions': _read(q.fetch_additions)})


# ---------- MUTATIONS ----------
@app.route('/api/checkout', methods=['POST'])
def api_checkout():
    data = _body()
    sale = rec.record_sale(_runtime().store, _store_id(data), data.get('items') or data.get('cart') or [])
    return _saved(transaction=sale)


@app.route('/api/products', methods=['POST'])
def api_create_product():
    data = _body()
    product = rec.create_product(
        _runtime().store,
        data.get('name'),
        data.get('cost'),
        data.get('price'),
        data.get('warehouseStock', 0),
        data.get('restockQty', rec.DEFAULT_RESTOCK_QTY),
    )
    return _saved(product=product), 201


@app.route('/api/products/bulk', methods=['POST'])
def api_import_products():
    data = _body()
    rows = data.get('products')
    if not isinstance(rows, list):
        return jsonify({'status': 'error', 'message': 'Products must be an array'}), 400
    result = rec.import_products(_runtime().store, rows)
    return _saved(**result)


@app.route('/api/products/restock', methods=['POST'])
def api_restock_product():
    data = _body()
    product = rec.restock_product(
        _runtime().store, data.get('productId'), data.get('qty'), data.get('cost'), data.get('price')
    )
    return _saved(product=product)


@app.route('/api/products/<product_id>', methods=['DELETE'])
def api_delete_product(product_id: str):
    product = rec.delete_product(_runtime().store, product_id)
    return _saved(product=product)


@app.route('/api/inventory/addition', methods=['POST'])
def api_inventory_addition():
    data = _body()
    addition = rec.record_inventory_addition(_runtime().store, data.get('items') or [], data.get('referenceId'))
    return _saved(addition=addition), 201


@app.route('/api/inventory', methods=['DELETE'])
def api_remove_product_from_store():
    data = dict(request.args)
    data.update(_body())
    result = rec.remove_product_from_store(
        _runtime().store, _store_id(data), data.get('productId'),
        requested_by=data.get('requestedBy'), reason=data.get('reason'),
    )
    message = 'removal requested' if result['action'] == 'requested' else 'saved locally'
    return _saved(message, **result)


@app.route('/api/transfer', methods=['POST'])
def api_create_transfer():
    data = _body()
    transfer = rec.create_transfer(_runtime().store, _store_id(data), data.get('items') or [])
    return _saved(transfer=transfer), 201


@app.route('/api/transfer/confirm', methods=['POST'])
def api_confirm_transfer():
    data = _body()
    transfer = rec.confirm_transfer(_runtime().store, data.get('transferId'), data.get('confirmedBy'))
    return _saved(transfer=transfer)


@app.route('/api/transfer/cancel', methods=['POST'])
def api_cancel_transfer():
    data = _body()
    transfer = rec.cancel_transfer(
        _runtime().store, data.get('transferId'), data.get('reason'), data.get('cancelledBy')
    )
    return _saved(transfer=transfer)


@app.route('/api/inventory/request-change', methods=['POST'])
def api_request_change():
    data = _body()
    change = rec.request_change(
        _runtime().store,
        _store_id(data),
        data.get('productId'),
        data.get('changeType'),
        data.get('qty'),
        new_cost=data.get('newCost'),
        new_price=data.get('newPrice'),
        reason=data.get('reason'),
        requested_by=data.get('requestedBy'),
    )
    return _saved(change=change), 201


@app.route('/api/inventory/approve-change', methods=['POST'])
def api_approve_change():
    data = _body()
    change = rec.approve_change(_runtime().store, data.get('pendingChangeId'), data.get('reviewedBy'))
    return _saved(change=change)


@app.route('/api/inventory/reject-change', methods=['POST'])
def api_reject_change():
    data = _body()
    change = rec.reject_change(
        _runtime().store, data.get('pendingChangeId'), data.get('reviewedBy'), data.get('reason')
    )
    return _saved(change=change)


@app.route('/api/inventory/cancel-change', methods=['POST'])
def api_cancel_change():
    data = _body()
    change = rec.cancel_change(_runtime().store, data.get('pendingChangeId'), data.get('requestedBy'))
    return _saved(change=change)


@app.route('/api/inventory/confirm-return', methods=['POST'])
def api_confirm_return():
    data = _body()
    change = rec.confirm_return(_runtime().store, data.get('pendingChangeId'))
    return _saved(change=change)


if __name__ == '__main__':
    _runtime()

    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app.run(host=host, port=port, debug=debug)
