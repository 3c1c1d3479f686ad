import logging
import threading
from datetime import date
from typing import Optional

from flask import Flask, request, jsonify
from flask_cors import CORS

from scrapledger.config import Settings
from scrapledger.errors import (
    ConfigurationError,
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from scrapledger.extractor import BillExtractor
from scrapledger.history import describe_history
from scrapledger.models import UNIT_WEIGHT
from scrapledger.store import DEFAULT_BOTTLE_WEIGHT, LedgerStore
from scrapledger.summarizer import BillSummarizer
from scrapledger.sync import SyncEngine

logger = logging.getLogger(__name__)


class Connectivity:
    """Network state reported by the device shell."""

    def __init__(self, online: bool = True):
        self._online = online
        self._lock = threading.Lock()

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def set(self, online: bool) -> None:
        with self._lock:
            self._online = online


def _status_for(error: LedgerError) -> int:
    if isinstance(error, (ValidationError, ConfigurationError)):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ReferentialIntegrityError):
        return 409
    return 500


def _parse_day(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"'{name}' must be a date like 2024-01-15, got {value!r}")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    engine: Optional[SyncEngine] = None,
    connectivity: Optional[Connectivity] = None,
) -> Flask:
    """Build the ledger API around an open store and sync engine."""
    settings = settings or Settings.from_env()
    connectivity = connectivity or Connectivity()
    if store is None:
        store = LedgerStore(settings.db_path, bill_tag=settings.bill_prefix).open()
    if engine is None:
        engine = SyncEngine(
            store,
            settings.backend_url,
            connectivity.is_online,
            timeout=settings.sync_timeout,
            probe_timeout=settings.probe_timeout,
            max_retries=settings.max_retries,
        )

    app = Flask(__name__)
    CORS(app)
    app.config['LEDGER_STORE'] = store
    app.config['SYNC_ENGINE'] = engine

    summarizer = BillSummarizer()

    def extractor() -> BillExtractor:
        def unit_type_of(item_id):
            item = store.get_item(item_id)
            return item.unit_type if item else None
        return BillExtractor(unit_type_of)

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error):
        status = _status_for(error)
        if status == 500:
            logger.error(f"Request failed: {error}")
        body = {"is_success": False, "error": str(error)}
        if isinstance(error, ValidationError) and len(error.errors) > 1:
            body["errors"] = error.errors
        return jsonify(body), status

    # Bills

    @app.route('/bills', methods=['GET'])
    def list_bills():
        """All bills, newest first."""
        bills = store.get_all_bills()
        return jsonify({"is_success": True, "data": [bill.to_dict() for bill in bills]}), 200

    @app.route('/bills', methods=['POST'])
    def create_bill():
        """Save a new bill from submitted lines."""
        bill_request = extractor().extract_from_dict(_json_body())
        bill_id = store.save_bill(bill_request.header, bill_request.lines)
        bill = store.get_bill_details(bill_id)
        return jsonify({"is_success": True, "data": bill.to_dict()}), 201

    @app.route('/bills/<int:bill_id>', methods=['GET'])
    def get_bill(bill_id):
        bill = store.get_bill_details(bill_id)
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        return jsonify({"is_success": True, "data": bill.to_dict()}), 200

    @app.route('/bills/<int:bill_id>', methods=['PUT'])
    def edit_bill(bill_id):
        """Replace a bill's header and lines."""
        bill_request = extractor().extract_from_dict(_json_body())
        store.update_bill(bill_id, bill_request.header, bill_request.lines)
        bill = store.get_bill_details(bill_id)
        return jsonify({"is_success": True, "data": bill.to_dict()}), 200

    @app.route('/bills/<int:bill_id>', methods=['DELETE'])
    def remove_bill(bill_id):
        if not store.delete_bill(bill_id):
            raise NotFoundError(f"Bill {bill_id} not found")
        return jsonify({"is_success": True}), 200

    @app.route('/bills/<int:bill_id>/history', methods=['GET'])
    def bill_history(bill_id):
        """Edit history of a bill with readable change lines."""
        if store.get_bill(bill_id) is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        entries = describe_history(store.get_bill_edit_history(bill_id))
        return jsonify({"is_success": True, "data": entries}), 200

    # Items and bottle types

    @app.route('/items', methods=['GET'])
    def list_items():
        items = store.get_all_items()
        return jsonify({"is_success": True, "data": [item.to_dict() for item in items]}), 200

    @app.route('/items', methods=['POST'])
    def create_item():
        data = _json_body()
        item = store.add_item(
            data.get('name', ''),
            data.get('price', 0),
            data.get('unit_type', UNIT_WEIGHT),
        )
        return jsonify({"is_success": True, "data": item.to_dict()}), 201

    @app.route('/items/<int:item_id>', methods=['PATCH'])
    def edit_item(item_id):
        data = _json_body()
        item = store.update_item(
            item_id,
            name=data.get('name'),
            unit_type=data.get('unit_type'),
            last_price_per_kg=data.get('last_price_per_kg'),
            last_price_per_unit=data.get('last_price_per_unit'),
        )
        return jsonify({"is_success": True, "data": item.to_dict()}), 200

    @app.route('/items/<int:item_id>', methods=['DELETE'])
    def remove_item(item_id):
        if store.get_item(item_id) is None:
            raise NotFoundError(f"Item {item_id} not found")
        store.delete_item(item_id)
        return jsonify({"is_success": True}), 200

    @app.route('/bottle-types', methods=['GET'])
    def list_bottle_types():
        bottles = store.get_bottle_types()
        return jsonify({"is_success": True, "data": [b.to_dict() for b in bottles]}), 200

    @app.route('/bottle-types', methods=['POST'])
    def create_bottle_type():
        data = _json_body()
        bottle = store.add_bottle_type(
            data.get('name', ''),
            data.get('display_name', ''),
            data.get('price', 0),
            data.get('weight', DEFAULT_BOTTLE_WEIGHT),
        )
        return jsonify({"is_success": True, "data": bottle.to_dict()}), 201

    @app.route('/bottle-types/<int:bottle_id>', methods=['DELETE'])
    def remove_bottle_type(bottle_id):
        store.delete_bottle_type(bottle_id)
        return jsonify({"is_success": True}), 200

    # Settings and reports

    @app.route('/settings/weight-reduction', methods=['GET'])
    def get_weight_reduction():
        reduction = store.get_weight_reduction()
        return jsonify({"is_success": True, "data": {"reduction": float(reduction)}}), 200

    @app.route('/settings/weight-reduction', methods=['PUT'])
    def set_weight_reduction():
        data = _json_body()
        if 'reduction' not in data:
            raise ValidationError("Missing 'reduction' field in request body")
        reduction = store.set_weight_reduction(data['reduction'])
        return jsonify({"is_success": True, "data": {"reduction": float(reduction)}}), 200

    @app.route('/reports/dashboard', methods=['GET'])
    def dashboard():
        summary = summarizer.dashboard(
            store.get_all_bills(),
            store.get_all_items(),
            store.get_bottle_types(),
            store.today(),
        )
        return jsonify({"is_success": True, "data": summary.to_dict()}), 200

    @app.route('/reports/summary', methods=['GET'])
    def report_summary():
        """Bills filtered by customer search and date range."""
        report = summarizer.report(
            store.get_all_bills(),
            customer=request.args.get('search'),
            date_from=_parse_day(request.args.get('from'), 'from'),
            date_to=_parse_day(request.args.get('to'), 'to'),
        )
        return jsonify({"is_success": True, "data": report.to_dict()}), 200

    # Sync

    @app.route('/sync/status', methods=['GET'])
    def sync_status():
        return jsonify({"is_success": True, "data": engine.sync_status()}), 200

    @app.route('/sync', methods=['POST'])
    def sync_now():
        """Sync all unsynced bills, or queue a background pass."""
        if request.args.get('background', '').lower() in ('1', 'true'):
            engine.schedule_sync()
            return jsonify({"is_success": True, "data": {"scheduled": True}}), 202
        result = engine.sync_all()
        return jsonify({"is_success": result.success, "data": result.to_dict()}), 200

    @app.route('/sync/retry', methods=['POST'])
    def sync_retry():
        result = engine.retry_failed()
        return jsonify({"is_success": result.success, "data": result.to_dict()}), 200

    @app.route('/sync/clear', methods=['POST'])
    def sync_clear():
        cleared = store.clear_sync_data()
        return jsonify({"is_success": True, "data": {"cleared_bills": cleared}}), 200

    @app.route('/sync/connectivity', methods=['POST'])
    def connectivity_changed():
        """Record the device's network state; coming online starts a sync."""
        data = _json_body()
        online = data.get('online')
        if not isinstance(online, bool):
            raise ValidationError("'online' must be true or false")
        connectivity.set(online)
        scheduled = engine.on_connectivity_change(online) is not None
        return jsonify({"is_success": True, "data": {"online": online, "sync_scheduled": scheduled}}), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        status = "healthy" if store.is_ready else "starting"
        return jsonify({"status": status}), 200

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    app = create_app(settings)
    app.run(host='0.0.0.0', port=settings.port, debug=settings.debug)
