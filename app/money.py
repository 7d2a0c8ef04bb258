"""Decimal helpers. Every amount crossing a module boundary goes through here."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def quantize(value: Decimal) -> Decimal:
    """Round to cents using HALF_UP."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: object) -> Decimal:
    """Coerce ints, strings, Decimals (or None) to a cent-quantized Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        raise TypeError("float amounts are not accepted; pass str or Decimal")
    try:
        return quantize(Decimal(str(value)))
    except InvalidOperation:
        raise ValueError(f"Invalid monetary amount: {value!r}") from None


def to_cents(amount: Decimal) -> int:
    return int(quantize(amount) * 100)


def from_cents(cents: int | None) -> Decimal:
    if not cents:
        return ZERO
    return quantize(Decimal(cents) / 100)


def fmt(amount: Decimal) -> str:
    """Display form used in guest messages: $1,234.50"""
    return f"${quantize(amount):,.2f}"
