"""
Promo code validation and tax resolution, the two pricing collaborators of
the order aggregator.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from database import as_utc
from errors import ValidationError
from orders import CartLine
from pricing import percent_of
from schemas import PromoCode, ShippingAddress, TaxRate

logger = logging.getLogger(__name__)

SCOPE_ITEM_TYPES = {
    "courses": "course",
    "products": "product",
    "workshops": "workshop",
}
DIGITAL_ITEM_TYPES = ("course", "workshop")


def promo_discount(promo: PromoCode, lines: List[CartLine], now: Optional[datetime] = None) -> int:
    """Discount a promo code grants on the given cart, or ValidationError."""
    now = now or datetime.now(timezone.utc)
    if not promo.is_active or not (as_utc(promo.start_date) <= now <= as_utc(promo.end_date)):
        raise ValidationError("Invalid or expired promo code")
    if promo.usage_limit is not None and promo.used_count >= promo.usage_limit:
        raise ValidationError("Promo code usage limit reached")

    cart_total = sum(line.unit_price * line.quantity for line in lines)
    if promo.min_purchase_amount and cart_total < promo.min_purchase_amount:
        raise ValidationError(f"Promo code needs a minimum purchase of {promo.min_purchase_amount}")

    if promo.applicable_to == "all":
        eligible = cart_total
    else:
        item_type = SCOPE_ITEM_TYPES[promo.applicable_to]
        eligible = sum(l.unit_price * l.quantity for l in lines if l.item_type == item_type)
        if eligible == 0:
            raise ValidationError(f"Promo code only applies to {promo.applicable_to}")

    if promo.discount_type == "percentage":
        discount = percent_of(eligible, promo.discount_value)
        if promo.max_discount is not None:
            discount = min(discount, promo.max_discount)
    else:
        discount = int(promo.discount_value)
    return min(discount, eligible)


class PromoValidator:
    """Looks codes up in the promocode collection."""

    def __init__(self, database):
        self.database = database

    def find(self, code: str) -> PromoCode:
        doc = self.database["promocode"].find_one({"code": code.upper()})
        if not doc:
            raise ValidationError("Invalid or expired promo code")
        return PromoCode(**{k: v for k, v in doc.items() if k != "_id"})

    def __call__(self, code: str, lines: List[CartLine], subtotal: int) -> int:
        discount = promo_discount(self.find(code), lines)
        return min(discount, subtotal)

    def redeem(self, code: str) -> None:
        self.database["promocode"].update_one({"code": code.upper()}, {"$inc": {"used_count": 1}})


def compute_tax(rates: Iterable[TaxRate], lines: List[CartLine], shipping: int) -> int:
    """Apply tax rates in priority order.

    Simple rates are applied to their base; compound rates to their base plus
    the tax accumulated so far. `digital` rates only see course/workshop lines,
    `shipping` rates only the shipping charge.
    """
    goods = sum(l.unit_price * l.quantity for l in lines)
    digital = sum(l.unit_price * l.quantity for l in lines if l.item_type in DIGITAL_ITEM_TYPES)
    bases = {"all": goods, "digital": digital, "shipping": shipping}

    tax = 0
    for rate in sorted(rates, key=lambda r: r.priority):
        if not rate.is_active:
            continue
        base = bases[rate.apply_to]
        if rate.is_compound:
            base += tax
        tax += percent_of(base, rate.rate)
    return tax


class TaxResolver:
    """Resolves active tax rates for the shipping country/region."""

    def __init__(self, database, default_country: Optional[str] = None):
        self.database = database
        self.default_country = default_country

    def rates_for(self, country: str, region: Optional[str]) -> List[TaxRate]:
        query = {"country": country.upper(), "is_active": True}
        docs = self.database["taxrate"].find(query)
        rates = []
        for doc in docs:
            if doc.get("region") and (not region or doc["region"] != region.upper()):
                continue
            rates.append(TaxRate(**{k: v for k, v in doc.items() if k != "_id"}))
        return rates

    def __call__(self, address: Optional[ShippingAddress], lines: List[CartLine], shipping: int) -> int:
        country = address.country if address else self.default_country
        if not country:
            return 0
        region = address.state if address else None
        tax = compute_tax(self.rates_for(country, region), lines, shipping)
        logger.debug("Tax for %s/%s: %d", country, region, tax)
        return tax
