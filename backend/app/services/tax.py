# backend/app/services/tax.py
"""
Tax split for reservation amounts.

A ``None`` rate means tax does not apply: callers store NULL tax fields,
which is different from a zero tax amount.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from backend.app.core.constants import ZERO, PERCENT_BASE, to_money

DISPLAY_INCLUSIVE = "inclusive"
DISPLAY_EXCLUSIVE = "exclusive"


@dataclass
class TaxBreakdown:
    rate: Decimal
    amount: Decimal  # nominal amount the rate was applied to
    exclusive: Decimal
    tax: Decimal

    @property
    def inclusive(self) -> Decimal:
        return to_money(self.exclusive + self.tax)


def calculate_tax_from_exclusive(amount, rate) -> Decimal:
    return to_money(Decimal(str(amount)) * Decimal(str(rate)) / PERCENT_BASE)


def extract_exclusive_from_inclusive(amount, rate) -> Decimal:
    return to_money(Decimal(str(amount)) / (1 + Decimal(str(rate)) / PERCENT_BASE))


def effective_tax_rate(store_tax: Optional[dict], product_tax_settings: Optional[dict] = None) -> Optional[Decimal]:
    """
    Rate for a product, or None when tax is disabled or the rate is zero.

    A product that does not inherit from the store uses its own custom rate.
    """
    store_tax = store_tax or {}
    if not store_tax.get("enabled"):
        return None
    rate = store_tax.get("default_rate")
    product_tax_settings = product_tax_settings or {}
    if product_tax_settings.get("inherit_from_store") is False and product_tax_settings.get("custom_rate") is not None:
        rate = product_tax_settings["custom_rate"]
    if rate is None:
        return None
    rate = Decimal(str(rate))
    if rate <= ZERO:
        return None
    return rate


def calculate_tax(amount, rate: Optional[Decimal], display_mode: str = DISPLAY_EXCLUSIVE) -> Optional[TaxBreakdown]:
    """
    Split ``amount`` for ``rate``.

    Inclusive: the amount already contains tax. Exclusive: tax is added on
    top and the nominal amount is unchanged.
    """
    if rate is None or rate <= ZERO:
        return None
    amount = to_money(amount)
    if display_mode == DISPLAY_INCLUSIVE:
        exclusive = extract_exclusive_from_inclusive(amount, rate)
        return TaxBreakdown(rate=rate, amount=amount, exclusive=exclusive, tax=amount - exclusive)
    return TaxBreakdown(rate=rate, amount=amount, exclusive=amount, tax=calculate_tax_from_exclusive(amount, rate))


def item_tax_fields(unit_price, quantity: int, subtotal, rate: Optional[Decimal],
                    display_mode: str) -> dict:
    """Per-item columns: tax_rate, tax_amount, price_excl_tax, total_excl_tax (all None if untaxed)."""
    breakdown = calculate_tax(subtotal, rate, display_mode)
    if breakdown is None:
        return {"tax_rate": None, "tax_amount": None, "price_excl_tax": None, "total_excl_tax": None}
    unit = to_money(unit_price)
    if display_mode == DISPLAY_INCLUSIVE:
        price_excl = extract_exclusive_from_inclusive(unit, rate)
    else:
        price_excl = unit
    return {
        "tax_rate": rate,
        "tax_amount": breakdown.tax,
        "price_excl_tax": price_excl,
        "total_excl_tax": breakdown.exclusive,
    }
