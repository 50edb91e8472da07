"""Decimal helpers. Money is never a float anywhere in the fee engine."""

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(val) -> Decimal:
    if val is None:
        return ZERO
    return val if isinstance(val, Decimal) else Decimal(str(val))


def to_money(val) -> Decimal:
    """Quantize to two decimal places, half-up (the Numeric(12, 2) column precision)."""
    return to_decimal(val).quantize(CENT, rounding=ROUND_HALF_UP)


def round_to_unit(val, unit: Decimal) -> Decimal:
    """Round half-up to a multiple of `unit` (1 = whole currency units, 0.01 = minor units)."""
    unit = to_decimal(unit)
    steps = (to_decimal(val) / unit).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return to_money(steps * unit)
