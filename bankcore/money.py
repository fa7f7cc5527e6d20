"""
Fixed-Point Money Helpers

All amounts are Decimal with 2 decimal places. NEVER uses float for monetary
values. Rounding (half-up) is applied to derived values such as interest;
raw transaction amounts are validated, never rounded.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .errors import ValidationError

# High precision for intermediate calculations
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert a stored or user-supplied value to Decimal without rounding"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Floats carry binary noise; go through their shortest repr
        value = repr(value)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def round_money(value: Decimal) -> Decimal:
    """Round a derived value to cents, half-up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def validate_amount(value: AmountLike) -> Decimal:
    """
    Validate a transaction or request amount.
    
    The amount must be strictly positive and carry at most two decimal
    places. It is returned at two places without any rounding.
    """
    amount = to_decimal(value)
    if amount <= ZERO:
        raise ValidationError(f"Amount must be positive, got {amount}")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"Amount {amount} has more than 2 decimal places")
    return amount.quantize(CENT)


def format_amount(value: Decimal) -> str:
    """Format for display, e.g. $1,020.00"""
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"
