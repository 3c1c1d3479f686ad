"""Data models for the scrap billing ledger.

This module defines the items, caller-supplied line variants and
persisted bills that flow between the weight model, the store and
the sync engine.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

UNIT_WEIGHT = "weight"
UNIT_COUNT = "count"
UNIT_TYPES = (UNIT_WEIGHT, UNIT_COUNT)

MODE_NORMAL = "normal"
MODE_L = "L"
WEIGHT_MODES = (MODE_NORMAL, MODE_L)

DEFAULT_CUSTOMER_NAME = "Walk-in Customer"


def to_decimal(value) -> Decimal:
    """Coerce a stored or entered number into a Decimal.

    ``None`` and empty strings become zero.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal('0')
    return Decimal(str(value))


@dataclass
class Item:
    """A sellable unit with a cached last price.

    Attributes:
        id: Row id in the store
        name: Unique, case-sensitive item name
        unit_type: "weight" or "count"
        last_price_per_kg: Price used on the last weight bill line
        last_price_per_unit: Price used on the last count bill line
        item_code: Short derived code (upper-case name prefix + id)
        sync_uuid: Stable identifier used when talking to the backend
        created_at: Creation timestamp
    """
    id: int
    name: str
    unit_type: str = UNIT_WEIGHT
    last_price_per_kg: Decimal = Decimal('0')
    last_price_per_unit: Decimal = Decimal('0')
    item_code: Optional[str] = None
    sync_uuid: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        self.last_price_per_kg = to_decimal(self.last_price_per_kg)
        self.last_price_per_unit = to_decimal(self.last_price_per_unit)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'unit_type': self.unit_type,
            'last_price_per_kg': float(self.last_price_per_kg),
            'last_price_per_unit': float(self.last_price_per_unit),
            'item_code': self.item_code,
            'sync_uuid': self.sync_uuid,
            'created_at': self.created_at,
        }


@dataclass
class BottleType:
    """A named bottle kind, billed by count through its matching item."""
    id: int
    name: str
    display_name: str
    standard_weight: Decimal = Decimal('0')
    price_per_unit: Decimal = Decimal('0')
    created_at: Optional[str] = None

    def __post_init__(self):
        self.standard_weight = to_decimal(self.standard_weight)
        self.price_per_unit = to_decimal(self.price_per_unit)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'display_name': self.display_name,
            'standard_weight': float(self.standard_weight),
            'price_per_unit': float(self.price_per_unit),
            'created_at': self.created_at,
        }


@dataclass
class WeightEntry:
    """One reading from the scale, expressed in a weight mode."""
    weight: Decimal
    mode: str = MODE_NORMAL

    def __post_init__(self):
        self.weight = to_decimal(self.weight)


@dataclass
class WeightLine:
    """Caller input for an item billed by weight.

    Attributes:
        item_id: Referenced item
        price_per_kg: Unit price per kilogram
        entries: Scale readings; summed before the mode conversion
    """
    item_id: int
    price_per_kg: Decimal
    entries: list[WeightEntry] = field(default_factory=list)

    def __post_init__(self):
        self.price_per_kg = to_decimal(self.price_per_kg)


@dataclass
class CountLine:
    """Caller input for an item billed per unit."""
    item_id: int
    quantity: int
    price_per_unit: Decimal

    def __post_init__(self):
        self.price_per_unit = to_decimal(self.price_per_unit)


LineInput = Union[WeightLine, CountLine]


@dataclass
class BillHeader:
    """Caller-supplied bill header.

    ``bill_number`` is generated by the store when left empty.
    """
    customer_name: str = DEFAULT_CUSTOMER_NAME
    customer_phone: str = ""
    bill_number: Optional[str] = None

    def __post_init__(self):
        self.customer_name = (self.customer_name or "").strip() or DEFAULT_CUSTOMER_NAME
        self.customer_phone = (self.customer_phone or "").strip()


@dataclass
class BillLine:
    """One persisted item contribution to a bill.

    Weight columns are zero for count items; exactly one of the two
    prices is populated depending on the item's unit type.
    """
    item_id: int
    item_name: str
    unit_type: str
    amount: Decimal
    original_weight: Decimal = Decimal('0')
    l_weight: Decimal = Decimal('0')
    reduced_weight: Decimal = Decimal('0')
    final_weight: Decimal = Decimal('0')
    weight_mode: str = MODE_NORMAL
    quantity: int = 1
    price_per_kg: Decimal = Decimal('0')
    price_per_unit: Decimal = Decimal('0')
    reduction_factor: Decimal = Decimal('0')
    id: Optional[int] = None
    bill_id: Optional[int] = None

    def __post_init__(self):
        for name in ('amount', 'original_weight', 'l_weight', 'reduced_weight',
                     'final_weight', 'price_per_kg', 'price_per_unit',
                     'reduction_factor'):
            setattr(self, name, to_decimal(getattr(self, name)))
        self.quantity = int(self.quantity or 0)

    @property
    def is_weight(self) -> bool:
        return self.unit_type != UNIT_COUNT

    @property
    def billed_weight(self) -> Decimal:
        """Weight the customer is paid for: L weight in L mode."""
        if self.weight_mode == MODE_L:
            return self.l_weight
        return self.final_weight

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'bill_id': self.bill_id,
            'item_id': self.item_id,
            'item_name': self.item_name,
            'unit_type': self.unit_type,
            'original_weight': float(self.original_weight),
            'l_weight': float(self.l_weight),
            'reduced_weight': float(self.reduced_weight),
            'final_weight': float(self.final_weight),
            'weight_mode': self.weight_mode,
            'quantity': self.quantity,
            'price_per_kg': float(self.price_per_kg),
            'price_per_unit': float(self.price_per_unit),
            'amount': float(self.amount),
        }


@dataclass
class Bill:
    """A complete purchase transaction with its sync state.

    Attributes:
        id: Row id in the store
        bill_number: Unique ``<PREFIX><DD><MM><NNNN>`` number
        customer_name: Seller name, "Walk-in Customer" by default
        customer_phone: Optional phone number
        total_amount: Sum of line amounts, rounded to 2 decimals
        date: Creation timestamp (ISO-8601)
        is_synced: Whether the backend acknowledged this bill
        sync_attempts: Failed transmissions since the last success
        last_sync_attempt: Timestamp of the last transmission attempt
        sync_uuid: Stable identifier sent with every transmission
        revision: Edit counter; bumped by every update
        lines: Materialized bill lines
    """
    id: int
    bill_number: str
    customer_name: str
    total_amount: Decimal
    date: str
    customer_phone: str = ""
    is_synced: bool = False
    sync_attempts: int = 0
    last_sync_attempt: Optional[str] = None
    sync_uuid: Optional[str] = None
    revision: int = 0
    lines: list[BillLine] = field(default_factory=list)

    def __post_init__(self):
        self.total_amount = to_decimal(self.total_amount)
        self.is_synced = bool(self.is_synced)
        self.sync_attempts = int(self.sync_attempts or 0)
        self.revision = int(self.revision or 0)

    def calculate_lines_total(self) -> Decimal:
        """Sum of the line amounts, unrounded."""
        return sum((line.amount for line in self.lines), Decimal('0'))

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'bill_number': self.bill_number,
            'customer_name': self.customer_name,
            'customer_phone': self.customer_phone,
            'total_amount': float(self.total_amount),
            'date': self.date,
            'is_synced': self.is_synced,
            'sync_attempts': self.sync_attempts,
            'last_sync_attempt': self.last_sync_attempt,
            'sync_uuid': self.sync_uuid,
            'revision': self.revision,
            'items': [line.to_dict() for line in self.lines],
        }


@dataclass
class BillListing:
    """Read-only bill row for history and dashboard screens."""
    id: int
    bill_number: str
    customer_name: str
    total_amount: Decimal
    date: str
    customer_phone: str = ""
    is_synced: bool = False
    sync_attempts: int = 0
    items_list: str = ""
    item_count: int = 0

    def __post_init__(self):
        self.total_amount = to_decimal(self.total_amount)
        self.is_synced = bool(self.is_synced)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'bill_number': self.bill_number,
            'customer_name': self.customer_name,
            'customer_phone': self.customer_phone,
            'total_amount': float(self.total_amount),
            'date': self.date,
            'is_synced': self.is_synced,
            'sync_attempts': self.sync_attempts,
            'items_list': self.items_list,
            'item_count': self.item_count,
        }
