"""Synchronization of the local ledger with the remote backend.

Each pass probes the backend, then walks unsynced bills oldest first.
Every bill is rebuilt into a canonical payload from its raw weight and
quantity fields, validated, and posted on its own. One bill's failure
never stops the batch: it is recorded on the bill (attempt counter and
timestamp) and the pass moves on.
"""

import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

import requests

from .errors import (
    LedgerError,
    NetworkError,
    RemoteRejection,
    SyncTimeoutError,
    ValidationError,
)
from .models import MODE_L, UNIT_COUNT, Bill, BillLine
from .store import LedgerStore
from .weight import compute_count_line, compute_weight_line, round2

logger = logging.getLogger(__name__)

SYNC_BILL_PATH = "/api/sync-bill/"
SYNC_STATUS_PATH = "/api/sync-status/"

DEFAULT_TIMEOUT = 30
DEFAULT_PROBE_TIMEOUT = 5
DEFAULT_MAX_RETRIES = 3

OFFLINE_MESSAGE = "No internet connection. Please check your network."


@dataclass
class SyncOutcome:
    """Result of transmitting a single bill."""
    success: bool
    message: str
    error: Optional[LedgerError] = None

    def to_dict(self) -> dict:
        return {'success': self.success, 'message': self.message}


@dataclass
class SyncResult:
    """Aggregate result of a sync pass."""
    success: bool
    synced_bills: int = 0
    failed_bills: int = 0
    synced_items: int = 0
    message: str = ""
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'syncedBills': self.synced_bills,
            'failedBills': self.failed_bills,
            'syncedItems': self.synced_items,
            'message': self.message,
            'failures': list(self.failures),
        }


def _line_factor(line: BillLine) -> Decimal:
    """Reduction factor an L-mode line was computed with.

    Rows written before the factor was stored derive it from their
    weights.
    """
    if line.reduction_factor > 0 or line.original_weight <= 0:
        return line.reduction_factor
    return Decimal('1') - line.l_weight / line.original_weight


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


class SyncEngine:
    """Pushes unsynced bills to the backend and records the outcome.

    Args:
        store: Open ledger store.
        base_url: Backend root, e.g. ``http://localhost:8000``.
        is_online: Returns whether the device currently has a network.
        session: ``requests.Session`` to send with; created when omitted.
        timeout: Seconds allowed for each bill upload.
        probe_timeout: Seconds allowed for the reachability probe.
        max_retries: Failed attempts after which a bill leaves retry sweeps.
    """

    def __init__(
        self,
        store: LedgerStore,
        base_url: str,
        is_online: Callable[[], bool],
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.is_online = is_online
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.max_retries = max_retries

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-sync")
        self._lock = threading.Lock()
        self._pending: Optional[Future] = None
        self._last_online: Optional[bool] = None
        self.last_result: Optional[SyncResult] = None

    # -----------------------------------------------------------------------
    # Detection and payloads
    # -----------------------------------------------------------------------

    def get_unsynced_bills(self) -> list[Bill]:
        return self.store.get_unsynced_bills()

    def retry_eligible(self, bill: Bill) -> bool:
        return not bill.is_synced and bill.sync_attempts < self.max_retries

    def build_payload(self, bill: Bill) -> dict:
        """Canonical outbound payload for a stored bill.

        Line amounts and the total are recomputed from the stored raw
        weights and quantities rather than read from the stored amounts.

        Raises:
            ValidationError: If a stored line cannot be recomputed.
            ConfigurationError: If an L-mode line carries an unusable
                reduction factor.
        """
        items = []
        total = Decimal('0')
        for line in bill.lines:
            if line.unit_type == UNIT_COUNT:
                amount = compute_count_line(line.quantity, line.price_per_unit)
                items.append({
                    'itemName': line.item_name,
                    'unitType': line.unit_type,
                    'quantity': line.quantity,
                    'weightMode': line.weight_mode,
                    'originalWeight': 0.0,
                    'lWeight': 0.0,
                    'reducedWeight': 0.0,
                    'finalWeight': 0.0,
                    'pricePerKg': 0.0,
                    'pricePerUnit': float(line.price_per_unit),
                    'amount': float(amount),
                })
            else:
                if line.weight_mode == MODE_L:
                    result = compute_weight_line(line.l_weight, MODE_L, _line_factor(line),
                                                 line.price_per_kg)
                else:
                    result = compute_weight_line(line.final_weight, line.weight_mode,
                                                 Decimal('0'), line.price_per_kg)
                amount = result.amount
                items.append({
                    'itemName': line.item_name,
                    'unitType': line.unit_type,
                    'quantity': line.quantity,
                    'weightMode': line.weight_mode,
                    'originalWeight': float(result.original_weight),
                    'lWeight': float(result.l_weight),
                    'reducedWeight': float(result.reduced_weight),
                    'finalWeight': float(result.final_weight),
                    'pricePerKg': float(line.price_per_kg),
                    'pricePerUnit': 0.0,
                    'amount': float(amount),
                })
            total += amount

        return {
            'billNumber': bill.bill_number,
            'customerName': bill.customer_name,
            'customerPhone': bill.customer_phone,
            'totalAmount': float(round2(total)),
            'date': bill.date,
            'syncUuid': bill.sync_uuid,
            'items': items,
        }

    def validate(self, payload: dict) -> list[str]:
        """Problems that would make the backend reject ``payload``."""
        errors = []
        if not payload.get('billNumber'):
            errors.append("Missing bill number")
        if not _is_number(payload.get('totalAmount')):
            errors.append("Total amount is not a number")

        items = payload.get('items')
        if not items:
            errors.append("Bill has no items")
            return errors

        for index, item in enumerate(items, start=1):
            name = item.get('itemName')
            if not name:
                errors.append(f"Item {index} has no name")
                name = f"Item {index}"
            amount = item.get('amount')
            if not _is_number(amount) or amount < 0:
                errors.append(f"{name} has an invalid amount")
            elif item.get('unitType') != UNIT_COUNT and amount <= 0:
                errors.append(f"{name} has a zero amount")
        return errors

    # -----------------------------------------------------------------------
    # Transmission
    # -----------------------------------------------------------------------

    def check_backend(self) -> bool:
        """Probe the backend status endpoint with the short timeout."""
        url = f"{self.base_url}{SYNC_STATUS_PATH}"
        try:
            response = self.session.get(url, timeout=self.probe_timeout,
                                        headers={'Accept': 'application/json'})
        except requests.RequestException as e:
            logger.warning(f"Backend probe failed for {url}: {e}")
            return False
        return response.ok

    def sync_one(self, bill: Bill) -> SyncOutcome:
        """Build, validate and post one bill.

        Transmission failures are returned as an unsuccessful outcome
        carrying the error; nothing is recorded on the bill here.

        Raises:
            NetworkError: If the device is offline.
        """
        if not self.is_online():
            raise NetworkError(OFFLINE_MESSAGE)

        try:
            payload = self.build_payload(bill)
        except LedgerError as e:
            error = ValidationError(f"Bill {bill.bill_number} could not be rebuilt: {e}")
            return SyncOutcome(False, error.message, error)

        errors = self.validate(payload)
        if errors:
            logger.warning(f"Bill {bill.bill_number} failed validation: {errors}")
            error = ValidationError(f"Validation failed: {', '.join(errors)}", errors)
            return SyncOutcome(False, error.message, error)

        logger.debug(f"Sync payload for {bill.bill_number}: {payload}")
        url = f"{self.base_url}{SYNC_BILL_PATH}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            error = SyncTimeoutError(f"Timed out after {self.timeout}s: {e}", self.timeout)
            return SyncOutcome(False, error.message, error)
        except requests.RequestException as e:
            error = NetworkError("Could not reach backend", e)
            return SyncOutcome(False, str(error), error)

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            message = self._server_message(body) or f"Server returned status {response.status_code}"
            return SyncOutcome(False, message, RemoteRejection(message, response.status_code))
        if not isinstance(body, dict):
            message = "Malformed response from server"
            return SyncOutcome(False, message, RemoteRejection(message, response.status_code))
        if not body.get('success'):
            message = self._server_message(body) or "Backend rejected the bill"
            return SyncOutcome(False, message, RemoteRejection(message, response.status_code))

        return SyncOutcome(True, body.get('message') or f"Bill {bill.bill_number} synced")

    @staticmethod
    def _server_message(body) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        for key in ('error', 'message', 'detail'):
            value = body.get(key)
            if value:
                return str(value)
        return None

    # -----------------------------------------------------------------------
    # Batches
    # -----------------------------------------------------------------------

    def sync_all(self) -> SyncResult:
        """Sync every unsynced bill. Never raises."""
        return self._run(self.store.get_unsynced_bills)

    def retry_failed(self) -> SyncResult:
        """Resubmit only bills that still have retries left. Never raises."""
        return self._run(lambda: self.store.get_retry_eligible_bills(self.max_retries))

    def _run(self, load_bills: Callable[[], list[Bill]]) -> SyncResult:
        if not self.is_online():
            result = SyncResult(success=False, message=OFFLINE_MESSAGE)
        elif not self.check_backend():
            result = SyncResult(success=False,
                                message=f"Backend server is unreachable at {self.base_url}.")
        else:
            try:
                bills = load_bills()
            except LedgerError as e:
                logger.error(f"Could not load bills to sync: {e}")
                result = SyncResult(success=False, message=f"Could not load bills: {e}")
            else:
                result = self._sync_batch(bills)

        self.last_result = result
        logger.info(f"Sync pass finished: {result.message}")
        return result

    def _sync_batch(self, bills: list[Bill]) -> SyncResult:
        synced = failed = synced_items = 0
        failures = []
        for bill in bills:
            try:
                outcome = self.sync_one(bill)
            except NetworkError as e:
                outcome = SyncOutcome(False, e.message, e)

            try:
                if not outcome.success:
                    self.store.mark_sync_failed(bill.id, bill.revision)
                elif not self.store.mark_synced(bill.id, bill.revision):
                    outcome = SyncOutcome(False, "Edited during upload; pending for the next pass")
            except LedgerError as e:
                logger.error(f"Could not record sync state for {bill.bill_number}: {e}")
                outcome = SyncOutcome(False, f"Could not record sync state: {e}")

            if outcome.success:
                synced += 1
                synced_items += len(bill.lines)
            else:
                failed += 1
                failures.append(f"{bill.bill_number}: {outcome.message}")
                logger.warning(f"Bill {bill.bill_number} not synced: {outcome.message}")

        message = f"Synced {synced} bill(s). {failed} failed."
        if failures:
            message = f"{message} {'; '.join(failures)}"
        return SyncResult(
            success=failed == 0,
            synced_bills=synced,
            failed_bills=failed,
            synced_items=synced_items,
            message=message,
            failures=failures,
        )

    # -----------------------------------------------------------------------
    # Background scheduling
    # -----------------------------------------------------------------------

    def schedule_sync(self, retry_only: bool = False) -> Future:
        """Run a sync pass on the background worker.

        A pass already queued or running is reused instead of stacking
        another one behind it.
        """
        with self._lock:
            if self._pending is not None and not self._pending.done():
                return self._pending
            task = self.retry_failed if retry_only else self.sync_all
            self._pending = self._executor.submit(task)
            return self._pending

    def on_connectivity_change(self, online: bool) -> Optional[Future]:
        """Schedule a sync when the device comes back online."""
        previous, self._last_online = self._last_online, online
        if online and not previous:
            logger.info("Connectivity restored, scheduling sync")
            return self.schedule_sync()
        return None

    def sync_status(self) -> dict:
        counts = self.store.sync_counts(self.max_retries)
        return {
            'online': bool(self.is_online()),
            'backend_url': self.base_url,
            'pending_bills': counts['unsynced_bills'],
            'retry_exhausted_bills': counts['retry_exhausted_bills'],
            'queued_operations': counts['queue_items'],
            'max_retries': self.max_retries,
            'last_result': self.last_result.to_dict() if self.last_result else None,
        }

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        if self._owns_session:
            self.session.close()
