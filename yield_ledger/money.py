"""
Monetary Helpers

Amounts are Decimal with two places (the precision of the account columns),
rates Decimal with four. NEVER use float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from .exceptions import ValidationError

CENT = Decimal("0.01")
RATE_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, str]


def to_decimal(value: Number, field_name: str = "amount") -> Decimal:
    """Convert to Decimal, rejecting floats and unparseable input"""
    if isinstance(value, float):
        raise ValidationError(f"{field_name} must not be a float: {value!r}")
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric: {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} is not a valid number: {value!r}") from e
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite: {value!r}")
    return result


def quantize_amount(value: Number, field_name: str = "amount") -> Decimal:
    """Round a monetary amount to cents"""
    return to_decimal(value, field_name).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_rate(value: Number, field_name: str = "rate") -> Decimal:
    """Round a rate to four decimal places"""
    return to_decimal(value, field_name).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Format for display, e.g. $1,200.00 or -$50.00"""
    amount = quantize_amount(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
