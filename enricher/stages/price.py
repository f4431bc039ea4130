"""PriceCalculator — price, discount and unit economics (per serving, per 100 g, per unit)."""

from __future__ import annotations

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct
from enricher.stages.base import WEIGHT_BASED_FORMS, StageResult

PRICE_CONFIDENCE = 1.0
DERIVED_CONFIDENCE = 0.95


def _money(value: float) -> float:
    return round(value, 2)


def effective_weight_g(product: ParsedProduct) -> float | None:
    """Net weight to price against.

    Prefers serving_size_g x servings over the stored weight when the stored
    weight looks like a single serving or falls below 60% of that total.
    """
    stored = product.net_weight_g
    if product.serving_size_g and product.servings:
        derived = product.serving_size_g * product.servings
        if not stored or stored <= 1.5 * product.serving_size_g or stored < 0.6 * derived:
            return derived
    return stored


class PriceCalculator:
    name = "price_calculator"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        delta = EnrichmentDelta()

        price = so_far.price
        if raw.price_cents is not None:
            price = raw.price_cents / 100.0
            delta.set("price", price, PRICE_CONFIDENCE, "derived")

        regular, sale = raw.regular_price_cents, raw.sale_price_cents
        if regular and sale is not None and 0 <= sale < regular:
            discount = round((regular - sale) * 100.0 / regular, 1)
            delta.set("discount_pct", discount, PRICE_CONFIDENCE, "derived")
            delta.set("is_on_sale", True, PRICE_CONFIDENCE, "derived")

        if price is None:
            return StageResult(delta=delta)

        if so_far.servings and so_far.servings > 0:
            delta.set("price_per_serving", _money(price / so_far.servings), DERIVED_CONFIDENCE, "derived")
        elif so_far.servings_min and so_far.servings_max:
            # Bigger pack means cheaper serving.
            delta.set(
                "price_per_serving_min",
                _money(price / so_far.servings_max),
                DERIVED_CONFIDENCE,
                "derived",
            )
            delta.set(
                "price_per_serving_max",
                _money(price / so_far.servings_min),
                DERIVED_CONFIDENCE,
                "derived",
            )

        if so_far.form is None or so_far.form in WEIGHT_BASED_FORMS:
            weight = effective_weight_g(so_far)
            if weight and weight > 0:
                delta.set("price_per_100g", _money(price * 100 / weight), DERIVED_CONFIDENCE, "derived")

        if so_far.unit_count and so_far.unit_count > 0:
            delta.set("price_per_unit", _money(price / so_far.unit_count), DERIVED_CONFIDENCE, "derived")

        return StageResult(delta=delta)
