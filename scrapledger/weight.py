"""Weight and amount computation.

Translates entered scale weight and weight mode into billed weight,
gross weight and amount. Everything here is pure: no I/O and no
state, so the store and the sync engine can both rerun it and get
identical results.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from .errors import ConfigurationError, ValidationError
from .models import (
    MODE_L,
    MODE_NORMAL,
    WEIGHT_MODES,
    CountLine,
    LineInput,
    WeightEntry,
    WeightLine,
    to_decimal,
)

DEFAULT_REDUCTION_FACTOR = Decimal('0.1')

MONEY_PLACES = Decimal('0.01')
WEIGHT_PLACES = Decimal('0.001')


@dataclass(frozen=True)
class WeightResult:
    """Derived weights and amount for one weight line."""
    original_weight: Decimal
    l_weight: Decimal
    reduced_weight: Decimal
    final_weight: Decimal
    amount: Decimal


def round2(value) -> Decimal:
    """Round a monetary value to 2 places, half away from zero."""
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def round3(value) -> Decimal:
    """Round a weight to 3 places, half away from zero."""
    return to_decimal(value).quantize(WEIGHT_PLACES, rounding=ROUND_HALF_UP)


def check_reduction_factor(reduction_factor) -> Decimal:
    """Return the factor as a Decimal, or raise if it is outside [0, 1)."""
    factor = to_decimal(reduction_factor)
    if factor.is_nan() or factor < 0:
        raise ConfigurationError(f"Reduction factor must not be negative, got {reduction_factor}")
    if factor >= 1:
        raise ConfigurationError(f"Reduction factor must be below 1, got {reduction_factor}")
    return factor


def compute_weight_line(entered_weight, mode: str, reduction_factor, price_per_kg) -> WeightResult:
    """Compute a weight line from the weight shown on the scale.

    In normal mode the entered weight is trusted as-is. In L mode the
    entered weight is the reduced (displayed) figure: the gross weight
    is reconstructed as ``l / (1 - r)`` while the customer is billed
    on ``l``.

    Args:
        entered_weight: Weight read from the scale, >= 0.
        mode: "normal" or "L".
        reduction_factor: Fraction r in [0, 1).
        price_per_kg: Price per kilogram, >= 0.

    Returns:
        A WeightResult with weights rounded to 3 places and the
        amount rounded to 2 places.

    Raises:
        ConfigurationError: If the reduction factor is outside [0, 1).
        ValidationError: On negative weight/price or an unknown mode.
    """
    factor = check_reduction_factor(reduction_factor)
    weight = to_decimal(entered_weight)
    price = to_decimal(price_per_kg)

    if weight < 0:
        raise ValidationError(f"Weight must not be negative, got {entered_weight}")
    if price < 0:
        raise ValidationError(f"Price per kg must not be negative, got {price_per_kg}")
    if mode not in WEIGHT_MODES:
        raise ValidationError(f"Unknown weight mode: {mode}")

    if mode == MODE_L:
        l_weight = round3(weight)
        original = round3(weight / (Decimal('1') - factor))
        return WeightResult(
            original_weight=original,
            l_weight=l_weight,
            reduced_weight=round3(original - weight),
            final_weight=original,
            amount=round2(weight * price),
        )

    original = round3(weight)
    return WeightResult(
        original_weight=original,
        l_weight=Decimal('0.000'),
        reduced_weight=Decimal('0.000'),
        final_weight=original,
        amount=round2(weight * price),
    )


def compute_count_line(quantity, price_per_unit) -> Decimal:
    """Amount for a count line: ``round2(quantity * price_per_unit)``."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"Quantity must be a positive whole number, got {quantity}")
    price = to_decimal(price_per_unit)
    if price < 0:
        raise ValidationError(f"Price per unit must not be negative, got {price_per_unit}")
    return round2(quantity * price)


def sum_entries(entries: list[WeightEntry]) -> tuple[Decimal, str]:
    """Sum scale readings for one line and return (weight, mode).

    All entries on one line must share a mode; the single conversion
    is applied to the summed weight afterwards.

    Raises:
        ValidationError: If the entries mix weight modes.
    """
    modes = {entry.mode for entry in entries}
    if len(modes) > 1:
        raise ValidationError(
            "All weight entries on one line must use the same weight mode"
        )
    mode = modes.pop() if modes else MODE_NORMAL
    total = sum((entry.weight for entry in entries), Decimal('0'))
    return total, mode


def amount_of(line: LineInput, reduction_factor=DEFAULT_REDUCTION_FACTOR) -> Decimal:
    """Amount of a caller line, dispatching on its variant."""
    if isinstance(line, CountLine):
        return compute_count_line(line.quantity, line.price_per_unit)
    if isinstance(line, WeightLine):
        weight, mode = sum_entries(line.entries)
        return compute_weight_line(weight, mode, reduction_factor, line.price_per_kg).amount
    raise ValidationError(f"Unsupported line type: {type(line).__name__}")
