"""Bill request extraction module.

This module turns raw bill submissions (dicts or JSON, camelCase or
snake_case keys) into a BillHeader plus typed weight and count lines
ready for the ledger store.
"""

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from .errors import ValidationError
from .models import (
    MODE_L,
    MODE_NORMAL,
    UNIT_COUNT,
    UNIT_WEIGHT,
    BillHeader,
    CountLine,
    LineInput,
    WeightEntry,
    WeightLine,
)

_MODE_ALIASES = {
    'normal': MODE_NORMAL,
    'n': MODE_NORMAL,
    'l': MODE_L,
    'l_mode': MODE_L,
}


def _first(data: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class BillRequest:
    """A parsed bill submission."""
    header: BillHeader
    lines: list[LineInput] = field(default_factory=list)


class BillExtractor:
    """Extracts bill requests from collaborator payloads.

    Args:
        unit_type_of: Looks up an item's unit type by id. When omitted,
            the unit type is inferred from the line's keys.
    """

    def __init__(self, unit_type_of: Optional[Callable[[int], Optional[str]]] = None):
        self.unit_type_of = unit_type_of

    def extract_from_dict(self, data: dict[str, Any]) -> BillRequest:
        """Extract a bill request from a dictionary.

        Args:
            data: Dictionary with keys:
                - customerName / customer_name: Optional seller name
                - customerPhone / customer_phone: Optional phone number
                - billNumber / bill_number: Optional explicit number
                - items: List of line dicts

        Returns:
            A BillRequest with the header and typed lines.

        Raises:
            ValidationError: If the payload or any line is invalid; every
                problem found is listed on ``errors``.
        """
        if not isinstance(data, dict):
            raise ValidationError("Bill data must be an object")

        header = BillHeader(
            customer_name=str(_first(data, 'customerName', 'customer_name', default="")),
            customer_phone=str(_first(data, 'customerPhone', 'customer_phone', default="")),
            bill_number=_first(data, 'billNumber', 'bill_number') or None,
        )

        items = _first(data, 'items', 'lines', default=[])
        if not isinstance(items, list) or not items:
            raise ValidationError("Please add at least one item")

        lines = []
        errors = []
        for index, item in enumerate(items, start=1):
            try:
                lines.append(self._extract_line(item))
            except ValidationError as e:
                errors.extend(f"Item {index}: {message}" for message in e.errors)

        if errors:
            raise ValidationError("Invalid bill items", errors)
        return BillRequest(header=header, lines=lines)

    def extract_from_json(self, json_str: str) -> BillRequest:
        """Extract a bill request from a JSON string.

        Raises:
            ValidationError: If the JSON is invalid or data is missing.
        """
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON: {e}") from e

        return self.extract_from_dict(data)

    def _extract_line(self, item: Any) -> LineInput:
        if not isinstance(item, dict):
            raise ValidationError("Line must be an object")

        raw_id = _first(item, 'itemId', 'item_id', 'id')
        try:
            item_id = int(raw_id)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError("Please select an item")

        unit_type = self._unit_type(item_id, item)
        if unit_type == UNIT_COUNT:
            quantity = self._parse_quantity(_first(item, 'quantity', default=0))
            price = self._parse_amount(_first(item, 'pricePerUnit', 'price_per_unit', 'price',
                                              default=0))
            return CountLine(item_id=item_id, quantity=quantity, price_per_unit=price)

        price = self._parse_amount(_first(item, 'pricePerKg', 'price_per_kg', 'price', default=0))
        entries = self._extract_entries(item)
        if not entries:
            raise ValidationError("Please enter weight")
        return WeightLine(item_id=item_id, price_per_kg=price, entries=entries)

    def _unit_type(self, item_id: int, item: dict) -> str:
        if self.unit_type_of is not None:
            unit_type = self.unit_type_of(item_id)
            if unit_type is None:
                raise ValidationError(f"Unknown item id {item_id}")
            return unit_type
        unit_type = _first(item, 'unitType', 'unit_type')
        if unit_type in (UNIT_WEIGHT, UNIT_COUNT):
            return unit_type
        has_weight = any(key in item for key in ('weights', 'entries', 'weight'))
        return UNIT_WEIGHT if has_weight else UNIT_COUNT

    def _extract_entries(self, item: dict) -> list[WeightEntry]:
        """Weight entries from ``weights``/``entries`` or a single ``weight``."""
        line_mode = _first(item, 'weightMode', 'weight_mode', default=MODE_NORMAL)
        raw_entries = _first(item, 'weights', 'entries')
        if raw_entries is None:
            weight = _first(item, 'weight')
            if weight is None:
                return []
            raw_entries = [{'weight': weight, 'mode': line_mode}]
        if not isinstance(raw_entries, list):
            raise ValidationError("Weights must be a list")

        entries = []
        for raw in raw_entries:
            if isinstance(raw, dict):
                weight = raw.get('weight')
                mode = _first(raw, 'mode', 'weightMode', 'weight_mode', default=line_mode)
            else:
                weight, mode = raw, line_mode
            if weight is None or str(weight).strip() == "":
                continue
            parsed = self._parse_amount(weight)
            if parsed < 0:
                raise ValidationError(f"Weight must not be negative, got {weight}")
            entries.append(WeightEntry(weight=parsed, mode=self._parse_mode(mode)))
        return entries

    @staticmethod
    def _parse_mode(value: Any) -> str:
        mode = _MODE_ALIASES.get(str(value).strip().lower())
        if mode is None:
            raise ValidationError(f"Unknown weight mode: {value}")
        return mode

    @staticmethod
    def _parse_quantity(value: Any) -> int:
        if isinstance(value, bool):
            raise ValidationError("Please enter quantity")
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"Cannot parse quantity: {value}")
        if not number.is_finite():
            raise ValidationError(f"Cannot parse quantity: {value}")
        if number <= 0 or number != number.to_integral_value():
            raise ValidationError("Please enter quantity")
        return int(number)

    @staticmethod
    def _parse_amount(value: Any) -> Decimal:
        """Parse a price or weight into a Decimal.

        Handles strings with currency symbols, commas and whitespace.

        Raises:
            ValidationError: If the value cannot be parsed.
        """
        if isinstance(value, Decimal):
            if not value.is_finite():
                raise ValidationError(f"Cannot parse amount: {value}")
            return value

        if isinstance(value, bool):
            raise ValidationError(f"Unsupported type for amount: {type(value)}")

        if isinstance(value, (int, float)):
            parsed = Decimal(str(value))
            if not parsed.is_finite():
                raise ValidationError(f"Cannot parse amount: {value}")
            return parsed

        if isinstance(value, str):
            cleaned = re.sub(r'[^\d.-]', '', value)
            if not cleaned:
                return Decimal('0')
            try:
                return Decimal(cleaned)
            except InvalidOperation:
                raise ValidationError(f"Cannot parse amount: {value}")

        raise ValidationError(f"Unsupported type for amount: {type(value)}")
