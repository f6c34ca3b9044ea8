"""Money arithmetic.

All amounts are Decimal dollars quantised to cents with half-up rounding,
the way currency is rounded on paper. Floats are accepted at the edges but
converted through str() so 0.1 stays 0.10 instead of 0.1000000000000000055.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Numeric = Decimal | int | float | str


def round_money(value: Numeric | None) -> Decimal:
    """
    Round a value to whole cents, half up. None counts as zero.

    Raises:
        ValueError: If the value is not a finite number or is too large
            to hold in cents
    """
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Not a money amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Money amount must be finite, got {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Money amount out of range: {value!r}")


def money_sum(values: Iterable[Numeric | None]) -> Decimal:
    """Sum values as money, rounding the result."""
    total = ZERO
    for value in values:
        total += round_money(value)
    return round_money(total)


def is_zero(value: Numeric | None) -> bool:
    """True when the amount rounds to less than one cent either way."""
    return abs(round_money(value)) < CENT


def clamp_paid(total_amount: Numeric, paid_amount: Numeric) -> Decimal:
    """Keep a paid amount inside [0, total_amount]."""
    total = round_money(total_amount)
    paid = round_money(paid_amount)
    if paid < ZERO:
        return ZERO
    if paid > total:
        return total
    return paid
