"""Decimal helpers for currency amounts."""

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

WHOLE_UNIT = Decimal("1")
CENT = Decimal("0.01")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Convert to Decimal going through str so floats keep their printed value."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_half_up(value: Decimal) -> Decimal:
    """Round to whole currency units, halves away from zero."""
    return value.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def ceil_units(value: Decimal) -> Decimal:
    return value.quantize(WHOLE_UNIT, rounding=ROUND_CEILING)
