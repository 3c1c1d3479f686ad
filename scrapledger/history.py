"""Edit history for bills.

Builds JSON snapshots of a bill before and after an edit and turns a
pair of snapshots into human-readable change lines. Diffing is display
only: missing or malformed fields read as zero instead of failing, so
snapshots written by older versions still render.
"""

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .models import MODE_L, UNIT_COUNT, Bill

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

WEIGHT_TOLERANCE = Decimal('0.001')
MONEY_TOLERANCE = Decimal('0.01')

NO_CHANGES = "No specific changes detected"


def snapshot_bill(bill: Bill) -> dict:
    """Snapshot of a bill as stored in the edit history."""
    items = []
    for line in bill.lines:
        if line.unit_type == UNIT_COUNT:
            weight = Decimal('0')
            price = line.price_per_unit
        else:
            weight = line.l_weight if line.weight_mode == MODE_L else line.final_weight
            price = line.price_per_kg
        items.append({
            'itemId': line.item_id,
            'itemName': line.item_name,
            'unitType': line.unit_type,
            'weightMode': line.weight_mode,
            'weight': float(weight),
            'quantity': line.quantity,
            'price': float(price),
            'amount': float(line.amount),
        })

    return {
        'schemaVersion': SCHEMA_VERSION,
        'billNumber': bill.bill_number,
        'customerName': bill.customer_name,
        'customerPhone': bill.customer_phone,
        'totalAmount': float(bill.total_amount),
        'items': items,
    }


def _number(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return None if not number.is_finite() else number


def _first_number(raw: dict, *keys: str) -> Decimal:
    for key in keys:
        number = _number(raw.get(key))
        if number is not None:
            return number
    return Decimal('0')


def _quantity(raw: dict) -> int:
    number = _number(raw.get('quantity'))
    return int(number) if number is not None else 0


def normalize_item(raw: Any) -> dict:
    """Normalize one snapshot item from any known snapshot layout."""
    if not isinstance(raw, dict):
        raw = {}
    item_id = raw.get('itemId') or raw.get('item_id') or raw.get('id')
    name = raw.get('itemName') or raw.get('name') or raw.get('item_name') or "Unknown Item"
    return {
        'id': item_id,
        'name': str(name),
        'weight': _first_number(raw, 'weight', 'final_weight', 'original_weight', 'l_weight'),
        'quantity': _quantity(raw),
        'price': _first_number(raw, 'price', 'price_per_kg', 'price_per_unit'),
        'amount': _first_number(raw, 'amount'),
    }


def _identity(item: dict) -> str:
    if item['id']:
        return f"ID_{item['id']}"
    return f"NAME_{item['name']}"


def _items(snapshot: dict) -> dict[tuple[str, int], dict]:
    """Snapshot items keyed by identity and occurrence, in snapshot order."""
    items = snapshot.get('items') if isinstance(snapshot, dict) else None
    if not isinstance(items, list):
        return {}
    keyed: dict[tuple[str, int], dict] = {}
    occurrences: dict[str, int] = {}
    for raw in items:
        item = normalize_item(raw)
        identity = _identity(item)
        occurrences[identity] = occurrences.get(identity, 0) + 1
        keyed[(identity, occurrences[identity])] = item
    return keyed


def diff_snapshots(previous: Any, new: Any) -> list[str]:
    """List the field-level changes between two bill snapshots.

    Items are matched by id, or by name for snapshots without ids;
    repeated lines for one item are paired in order of appearance.
    The total-amount change comes first, then per-item changes in the
    order of the new snapshot, then removals.

    Args:
        previous: Snapshot before the edit.
        new: Snapshot after the edit.

    Returns:
        Human-readable change lines; empty when nothing changed.
    """
    previous = previous if isinstance(previous, dict) else {}
    new = new if isinstance(new, dict) else {}
    changes: list[str] = []

    old_total = _first_number(previous, 'totalAmount', 'total_amount')
    new_total = _first_number(new, 'totalAmount', 'total_amount')
    if abs(old_total - new_total) > MONEY_TOLERANCE:
        changes.append(f"Total Amount: {old_total:.2f} -> {new_total:.2f}")

    old_items = _items(previous)
    new_items = _items(new)

    for key, item in new_items.items():
        old = old_items.get(key)
        if old is None:
            changes.append(f"Added: {item['name']}")
            continue

        name = item['name']
        if abs(old['weight'] - item['weight']) > WEIGHT_TOLERANCE:
            changes.append(f"{name} (Weight): {old['weight']:.3f} -> {item['weight']:.3f}")
        if old['quantity'] != item['quantity']:
            changes.append(f"{name} (Qty): {old['quantity']} -> {item['quantity']}")
        if abs(old['price'] - item['price']) > MONEY_TOLERANCE:
            changes.append(f"{name} (Price): {old['price']:.2f} -> {item['price']:.2f}")

    for key, old in old_items.items():
        if key not in new_items:
            changes.append(f"Removed: {old['name']}")

    return changes


def _load(data: Any) -> dict:
    if isinstance(data, dict):
        return data
    if not data:
        return {}
    try:
        loaded = json.loads(data)
    except (TypeError, ValueError) as e:
        logger.warning(f"Unreadable edit-history snapshot: {e}")
        return {}
    return loaded if isinstance(loaded, dict) else {}


def describe_history(rows: list[dict]) -> list[dict]:
    """Turn stored edit-history rows into display entries.

    Each row needs ``previous_data`` and ``new_data`` (JSON text or
    dicts) and ``created_at``.
    """
    entries = []
    for row in rows:
        previous = _load(row.get('previous_data'))
        new = _load(row.get('new_data'))
        changes = diff_snapshots(previous, new)
        entries.append({
            'id': row.get('id'),
            'created_at': row.get('created_at'),
            'changes': changes or [NO_CHANGES],
            'items': new.get('items', []),
        })
    return entries
