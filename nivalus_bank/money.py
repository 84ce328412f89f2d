"""
Fixed-point amount helpers

Balances and transaction amounts are Decimal values with two decimal
places. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28

PRECISION = 2
QUANTUM = Decimal('0.1') ** PRECISION
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, str, int, float]


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a value into a two-place Decimal amount.

    Floats go through str() first so 0.1 stays 0.10 rather than
    0.1000000000000000055511151231257827.

    Raises:
        InvalidAmountError: value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    try:
        return amount.quantize(QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError(f"Amount out of range: {value!r}")


def to_positive_amount(value: AmountLike) -> Decimal:
    """Convert and require amount > 0"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidAmountError("Amount must be greater than 0")
    return amount
