# app/services/money.py
"""Money helpers. Everything is Decimal with two places, rounded half up."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """
    Example:
        money("10")      → Decimal("10.00")
        money(9.995)     → Decimal("10.00")
        money(None)      → Decimal("0.00")
    """
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Invalid money value: {value!r}")


def format_brl(value) -> str:
    """R$ 1.234,56"""
    amount = money(value)
    integer, _, cents = f"{amount:,.2f}".partition(".")
    return f"R$ {integer.replace(',', '.')},{cents}"
