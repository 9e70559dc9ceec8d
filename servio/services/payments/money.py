from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from servio.errors import ValidationError

_CENT = Decimal("0.01")


def to_decimal(amount: Any) -> Decimal:
    """Parse a major-unit amount (e.g. rupees) into a positive 2dp Decimal."""
    if isinstance(amount, bool) or amount is None:
        raise ValidationError("Invalid amount")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive")
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    """Major units to gateway minor units (paise): round(amount * 100)."""
    return int((to_decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: Any) -> Decimal:
    return (Decimal(int(amount)) / 100).quantize(_CENT)
