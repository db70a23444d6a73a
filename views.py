"""Read-only HTTP endpoints for inspecting the committed store."""

from flask import Blueprint, current_app, jsonify, request

from errors import StoreError, UnknownTable
from schema import TABLES, encode_row

api = Blueprint('api', __name__, url_prefix='/api')


def _coordinator():
    return current_app.extensions['ride_ledger']


@api.errorhandler(StoreError)
def handle_store_error(error):
    status = 404 if isinstance(error, UnknownTable) else 400
    return jsonify(error.to_dict()), status


@api.route('/health')
def health():
    return jsonify({'status': 'ok', 'sequence': _coordinator().store.sequence})


@api.route('/tables/<table>/<key>')
def get_row(table, key):
    row = _coordinator().get(table, key)
    if row is None:
        return jsonify({'error': 'NotFound', 'message': f'No {table} row with key {key}'}), 404
    return jsonify(encode_row(row))


@api.route('/tables/<table>')
def rows_by_foreign_key(table):
    column = request.args.get('column')
    value = request.args.get('value')
    if not column or value is None:
        return jsonify({'error': 'BadRequest', 'message': 'column and value query parameters are required'}), 400
    rows = _coordinator().query_by_foreign_key(table, column, value)
    return jsonify([encode_row(row) for row in rows])


@api.route('/metrics')
def get_metrics():
    coordinator = _coordinator()
    return jsonify({
        'transactions': coordinator.stats(),
        'rows': {name: coordinator.store.count(name) for name in TABLES},
    })
