from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    # str() keeps the shortest repr, so 0.1 stays 0.1 instead of its binary expansion.
    return Decimal(str(value))


def round_half_up(value: Number, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def round_cents(value: Number) -> int:
    return int(round_half_up(value))


def dollars_to_cents(value: Number) -> int:
    """Whole-dollar amount (rounded half up) expressed in cents."""
    return int(round_half_up(value)) * 100


def cents_to_str(cents: int) -> str:
    """Plain decimal string for payloads, e.g. 161000 -> "1610.00"."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{sign}{whole}.{frac:02d}"


def format_money(cents: int) -> str:
    """Display string, e.g. 161000 -> "$1,610"; keeps cents only when non-zero."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    if frac:
        return f"{sign}${whole:,}.{frac:02d}"
    return f"{sign}${whole:,}"
