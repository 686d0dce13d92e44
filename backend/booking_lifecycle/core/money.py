"""
Integer-cent arithmetic. All amounts are cents; rounding is half-up.
"""

from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: int) -> int:
    return round_half_up(Decimal(amount_cents) * Decimal(percent) / Decimal(100))


def prorate(total_cents: int, part: int, whole: int, percent: int = 100) -> int:
    """total * part / whole, scaled by percent, rounded once at the end."""
    if whole <= 0:
        return 0
    return round_half_up(Decimal(total_cents) * Decimal(part) * Decimal(percent) / Decimal(whole * 100))


def format_cents(amount_cents: int) -> str:
    sign = "-" if amount_cents < 0 else ""
    return f"{sign}${abs(amount_cents) / 100:,.2f}"
