from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

QUANTITY_PLACES = Decimal("0.0001")
CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Coerce ints, strings and floats (via str) to Decimal."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_quantity(value) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def format_quantity(value) -> str:
    """95.0000 -> '95', 2.5000 -> '2.5'."""
    if value is None:
        return "0"
    q = to_decimal(value)
    if q == q.to_integral_value():
        return str(q.to_integral_value())
    return format(q.normalize(), "f")


def cents_from_amount(value) -> int:
    return int((to_decimal(value) / CENT).to_integral_value(rounding=ROUND_HALF_UP))


def format_cents(cents: int | None) -> str:
    """35000 -> '350.00'."""
    return str((Decimal(cents or 0) * CENT).quantize(CENT))
