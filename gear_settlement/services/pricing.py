from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from services.date_utils import rental_days

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def rental_cost(daily_rate, start: datetime, end: datetime) -> Decimal:
    return to_money(to_money(daily_rate) * rental_days(start, end))


def extension_cost(daily_rate, additional_days: int) -> Decimal:
    return to_money(to_money(daily_rate) * int(additional_days))


def platform_fee(total_amount, fee_rate) -> Decimal:
    return to_money(to_money(total_amount) * Decimal(str(fee_rate)))


def checkout_total(rental_amount, insurance_cost, deposit_due) -> Decimal:
    """What the renter pays up front. Premium protection replaces the deposit, so callers pass 0 there."""
    return to_money(rental_amount) + to_money(insurance_cost) + to_money(deposit_due)
