from datetime import datetime, timedelta, timezone

import pytest

from conftest import cart_line
from errors import ValidationError
from promotions import PromoValidator, TaxResolver, compute_tax, promo_discount
from schemas import PromoCode, ShippingAddress, TaxRate

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def promo(**kwargs):
    defaults = dict(
        code="SUMMER",
        name="Summer sale",
        discount_type="percentage",
        discount_value=10,
        start_date=NOW - timedelta(days=1),
        end_date=NOW + timedelta(days=1),
    )
    defaults.update(kwargs)
    return PromoCode(**defaults)


def test_percentage_discount_with_cap():
    lines = [cart_line(50000, 2)]
    assert promo_discount(promo(), lines, NOW) == 10000
    assert promo_discount(promo(max_discount=2500), lines, NOW) == 2500


def test_fixed_discount_capped_at_eligible_amount():
    assert promo_discount(promo(discount_type="fixed", discount_value=700), [cart_line(500)], NOW) == 500


def test_scope_limits_eligible_amount():
    lines = [cart_line(1000, item_type="course", name="Course"), cart_line(4000)]
    assert promo_discount(promo(applicable_to="courses"), lines, NOW) == 100
    with pytest.raises(ValidationError):
        promo_discount(promo(applicable_to="workshops"), lines, NOW)


@pytest.mark.parametrize("overrides", [
    dict(is_active=False),
    dict(end_date=NOW - timedelta(hours=1)),
    dict(start_date=NOW + timedelta(hours=1)),
    dict(usage_limit=5, used_count=5),
    dict(min_purchase_amount=100000),
])
def test_unusable_codes(overrides):
    with pytest.raises(ValidationError):
        promo_discount(promo(**overrides), [cart_line(1000)], NOW)


def test_validator_looks_up_upper_cased_code(mongo):
    mongo["promocode"].insert_one(promo(start_date=datetime.now(timezone.utc) - timedelta(days=1),
                                        end_date=datetime.now(timezone.utc) + timedelta(days=1)).model_dump())
    validator = PromoValidator(mongo)
    assert validator("summer", [cart_line(1000)], 1000) == 100
    validator.redeem("summer")
    assert mongo["promocode"].find_one({"code": "SUMMER"})["used_count"] == 1
    with pytest.raises(ValidationError):
        validator.find("WINTER")


def test_simple_and_compound_rates():
    rates = [
        TaxRate(name="GST", rate=18, country="IN"),
        TaxRate(name="Cess", rate=10, country="IN", is_compound=True, priority=1),
    ]
    # 18% of 1000 = 180, then 10% of (1000 + 180) = 118
    assert compute_tax(rates, [cart_line(1000)], 0) == 298


def test_digital_and_shipping_rates():
    rates = [
        TaxRate(name="Digital services", rate=5, country="IN", apply_to="digital"),
        TaxRate(name="Freight", rate=10, country="IN", apply_to="shipping"),
        TaxRate(name="Old", rate=50, country="IN", is_active=False),
    ]
    lines = [cart_line(2000, item_type="workshop", name="Workshop"), cart_line(3000)]
    assert compute_tax(rates, lines, 500) == 100 + 50


def test_resolver_matches_country_and_region(mongo):
    mongo["taxrate"].insert_many([
        TaxRate(name="Federal", rate=5, country="US").model_dump(),
        TaxRate(name="California", rate=7, country="US", region="CA").model_dump(),
        TaxRate(name="GST", rate=18, country="IN").model_dump(),
    ])
    resolver = TaxResolver(mongo)
    address = ShippingAddress(full_name="A", phone="1", address_line1="x", city="LA", state="ca",
                              postal_code="90001", country="us")
    assert resolver(address, [cart_line(1000)], 0) == 120
    address.state = "NY"
    assert resolver(address, [cart_line(1000)], 0) == 50
    assert resolver(None, [cart_line(1000)], 0) == 0
