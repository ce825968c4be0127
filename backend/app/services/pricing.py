# backend/app/services/pricing.py
"""Rental pricing: billable duration, duration tiers, line subtotal and deposit."""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from backend.app.core.constants import ZERO, PERCENT_BASE, to_money

UNIT_DURATIONS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}


@dataclass(frozen=True)
class Tier:
    min_duration: int
    discount_percent: Decimal


@dataclass
class LinePrice:
    duration: int
    pricing_mode: str
    base_price: Decimal
    effective_unit_price: Decimal  # per pricing unit, after discount
    discount_percent: Decimal
    subtotal: Decimal
    original_subtotal: Decimal
    savings: Decimal
    deposit_total: Decimal
    tier: Optional[Tier] = None


def calculate_duration(start: datetime, end: datetime, pricing_mode: str = "day") -> int:
    """Billable units; any partial unit is billed in full, never less than 1."""
    unit = UNIT_DURATIONS.get(pricing_mode, UNIT_DURATIONS["day"])
    seconds = (end - start).total_seconds()
    return max(1, math.ceil(seconds / unit.total_seconds()))


def find_applicable_tier(tiers: Iterable, duration: int) -> Optional[Tier]:
    """
    The qualifying tier with the largest ``min_duration``.

    Accepts PricingTier rows or Tier values. Tiers without a positive
    threshold or discount are ignored.
    """
    valid = []
    for tier in tiers:
        min_duration = int(tier.min_duration or 0)
        discount = Decimal(str(tier.discount_percent or 0))
        if min_duration > 0 and discount > ZERO:
            valid.append(Tier(min_duration=min_duration, discount_percent=discount))
    for tier in sorted(valid, key=lambda t: t.min_duration, reverse=True):
        if duration >= tier.min_duration:
            return tier
    return None


def calculate_line_price(
    base_price,
    deposit_per_unit,
    pricing_mode: str,
    tiers: Iterable,
    start: datetime,
    end: datetime,
    quantity: int,
) -> LinePrice:
    base = Decimal(str(base_price))
    deposit = Decimal(str(deposit_per_unit or 0))
    duration = calculate_duration(start, end, pricing_mode)
    tier = find_applicable_tier(tiers, duration)
    discount = tier.discount_percent if tier else ZERO

    effective = base * (1 - discount / PERCENT_BASE)
    original_subtotal = to_money(base * duration * quantity)
    subtotal = to_money(effective * duration * quantity)

    return LinePrice(
        duration=duration,
        pricing_mode=pricing_mode,
        base_price=to_money(base),
        effective_unit_price=to_money(effective),
        discount_percent=discount,
        subtotal=subtotal,
        original_subtotal=original_subtotal,
        savings=original_subtotal - subtotal,
        deposit_total=to_money(deposit * quantity),
        tier=tier,
    )


def pricing_breakdown(price: LinePrice, tax: Optional[dict] = None) -> dict:
    """JSON snapshot stored on the reservation item for audit / display."""
    breakdown = {
        "base_price": str(price.base_price),
        "effective_price": str(price.effective_unit_price),
        "duration": price.duration,
        "pricing_mode": price.pricing_mode,
        "discount_percent": str(price.discount_percent),
        "discount_amount": str(price.savings),
        "original_subtotal": str(price.original_subtotal),
        "subtotal": str(price.subtotal),
        "tier_min_duration": price.tier.min_duration if price.tier else None,
    }
    if tax:
        breakdown.update({k: (str(v) if isinstance(v, Decimal) else v) for k, v in tax.items()})
    return breakdown
