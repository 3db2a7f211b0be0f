# Overview: Minor-unit integer arithmetic and the display / persistence conversion points.

"""
Money helpers.

All amounts inside the service layer are integers counting minor units
(pence). Floats and Decimals only appear at two boundaries:

- HTTP: request bodies carry pounds ("12.50" / 12.5), responses display pounds.
- Persistence: NUMERIC(10,2) columns, converted by models._types.MinorUnits.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CURRENCY = "GBP"
MINOR_PER_MAJOR = 100


def add(*amounts: int) -> int:
    return sum(amounts)


def sub(amount: int, other: int) -> int:
    """Balance subtraction, saturating at zero."""
    return max(0, amount - other)


def mul_pct(amount: int, pct) -> int:
    """
    round(amount * pct / 100), half away from zero.

    `pct` may be an int or a Decimal (discount values are stored with two
    decimal places, e.g. 12.5%).
    """
    exact = Decimal(amount) * Decimal(str(pct)) / Decimal(100)
    rounded = exact.copy_abs().quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(rounded) if exact >= 0 else -int(rounded)


def min_minor(*amounts: int) -> int:
    return min(amounts)


def max_minor(*amounts: int) -> int:
    return max(amounts)


def to_decimal(minor: int) -> Decimal:
    """Minor units -> major-unit Decimal with two places (persisted form)."""
    return (Decimal(minor) / MINOR_PER_MAJOR).quantize(Decimal("0.01"))


def from_decimal(value) -> int:
    """Major-unit Decimal/str/number -> minor units, half away from zero."""
    major = value if isinstance(value, Decimal) else Decimal(str(value))
    minor = (major * MINOR_PER_MAJOR).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(minor)


def parse_major(value, field: str = "amount") -> int:
    """
    Parse a client-supplied pounds amount into minor units.

    Raises ValueError with a human message for anything that is not a
    finite number. Booleans are rejected even though they are ints.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    try:
        major = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field} must be a number")
    if not major.is_finite():
        raise ValueError(f"{field} must be a number")
    return from_decimal(major)


def to_major(minor: int | None) -> float | None:
    """Display-layer value in pounds (JSON number)."""
    if minor is None:
        return None
    return float(to_decimal(minor))


def format_major(minor: int) -> str:
    """£12.34 style string for human messages."""
    sign = "-" if minor < 0 else ""
    return f"{sign}£{to_decimal(abs(minor))}"
