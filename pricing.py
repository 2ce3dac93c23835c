"""
Unit price composition for cart lines.

Money is always an int of minor units. Percentages go through Decimal and are
rounded half-up to a whole minor unit exactly once, at the point of use.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from errors import ValidationError
from schemas import AddOn, Product, Variant

MINOR_UNIT = Decimal("1")


def as_decimal(value) -> Decimal:
    # via str: 2.9 must be exactly 2.9
    return Decimal(str(value))


def percent_of(amount: int, pct) -> int:
    """Return pct% of amount, rounded half-up to minor units."""
    return int((Decimal(amount) * as_decimal(pct) / Decimal(100)).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP))


def format_amount(amount: int, currency: str = "INR") -> str:
    major = (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{currency} {major:,}"


def compute_line_price(base_price: int, selected_variant: Optional[Variant] = None,
                       customization_modifiers: Iterable[int] = (),
                       add_on_ids: Iterable[str] = (),
                       add_on_catalog: Iterable[AddOn] = ()) -> int:
    """Compose a unit price.

    A selected variant replaces the base price. Customization modifiers and
    selected add-ons are added on top. Only active add-ons can be selected.
    """
    unit_price = selected_variant.price if selected_variant is not None else base_price
    unit_price += sum(customization_modifiers)

    active = {a.id: a for a in add_on_catalog if a.active}
    for add_on_id in add_on_ids:
        add_on = active.get(add_on_id)
        if add_on is None:
            raise ValidationError(f"Add-on {add_on_id} is not available")
        unit_price += add_on.price
    return unit_price


def _find_variant(product: Product, variant_id: Optional[str]) -> Optional[Variant]:
    if not product.has_variants:
        if variant_id:
            raise ValidationError(f"{product.name} has no variants")
        return None
    if not variant_id:
        raise ValidationError(f"Choose a variant of {product.name}")
    for variant in product.variants:
        if variant.id == variant_id:
            return variant
    raise ValidationError(f"Unknown variant {variant_id}")


def _customization_modifiers(product: Product, values: Dict[str, str]) -> List[int]:
    known = {c.id for c in product.customizations}
    unknown = set(values) - known
    if unknown:
        raise ValidationError(f"Unknown customization {sorted(unknown)[0]}")

    modifiers = []
    for customization in product.customizations:
        value = values.get(customization.id)
        if value is None or value == "":
            if customization.required:
                raise ValidationError(f"{customization.label} is required")
            continue
        if customization.type in ("select", "color") and customization.options and value not in customization.options:
            raise ValidationError(f"{value!r} is not an option for {customization.label}")
        if customization.max_length and len(value) > customization.max_length:
            raise ValidationError(f"{customization.label} is limited to {customization.max_length} characters")
        modifiers.append(customization.price_modifier)
    return modifiers


def price_product_line(product: Product, variant_id: Optional[str] = None,
                       customizations: Optional[Dict[str, str]] = None,
                       add_on_ids: Iterable[str] = ()) -> int:
    """Resolve buyer selections against a stored product and price one unit."""
    variant = _find_variant(product, variant_id)
    modifiers = _customization_modifiers(product, customizations or {})
    return compute_line_price(product.price, variant, modifiers, list(add_on_ids), product.add_ons)
