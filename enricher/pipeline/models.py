"""Product data models — raw feed records, the working accumulator, deltas and warnings.

Lifecycle of one product through the pipeline:
1. RawProduct — immutable feed record, built once per feed fetch
2. ParsedProduct — mutable accumulator seeded from the raw record, filled by stage deltas
3. EnrichedProduct — immutable snapshot of the accumulator plus AI fields and warnings
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RawProduct(BaseModel):
    """A catalog record as delivered by the store feed."""

    model_config = {"frozen": True}

    id: str
    type: str | None = None
    sku: str | None = None
    slug: str | None = None
    name: str | None = None
    permalink: str | None = None
    description: str | None = None
    price_cents: int | None = None
    regular_price_cents: int | None = None
    sale_price_cents: int | None = None
    currency: str | None = None
    is_in_stock: bool | None = None
    low_stock_remaining: int | None = None
    average_rating: float | None = None
    review_count: int | None = None
    images: list[str] = Field(default_factory=list)
    category_ids: list[int] = Field(default_factory=list)
    category_slugs: list[str] = Field(default_factory=list)
    category_names: list[str] = Field(default_factory=list)
    brand_slug: str | None = None
    brand_name: str | None = None
    dynamic_attrs: dict[str, list[str]] = Field(default_factory=dict)
    search_text: str = ""


class ParsedProduct(RawProduct):
    """Working record accumulated across the deterministic stages.

    ``provenance`` maps each populated enriched field to its source tag
    (attribute, regex, derived, heuristic, corrected, compose, unit_evidence)
    and ``confidence`` maps it to a score in [0, 1].
    """

    model_config = {"frozen": False}

    form: str | None = None
    flavor: str | None = None
    net_weight_g: float | None = None
    servings: int | None = None
    servings_min: int | None = None
    servings_max: int | None = None
    serving_size_g: float | None = None
    unit_count: int | None = None
    units_per_serving: int | None = None
    unit_mass_g: float | None = None
    price: float | None = None
    price_per_serving: float | None = None
    price_per_serving_min: float | None = None
    price_per_serving_max: float | None = None
    price_per_100g: float | None = None
    price_per_unit: float | None = None
    discount_pct: float | None = None
    is_on_sale: bool | None = None
    goal_tags: list[str] = Field(default_factory=list)
    diet_tags: list[str] = Field(default_factory=list)
    ingredients_key: list[str] = Field(default_factory=list)
    parent_id: str | None = None
    variant_group_id: str | None = None
    display_title: str | None = None
    provenance: dict[str, str] = Field(default_factory=dict)
    confidence: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: RawProduct) -> ParsedProduct:
        return cls(**raw.model_dump())


# Fields a stage delta is allowed to write.
ENRICHED_FIELDS = frozenset(set(ParsedProduct.model_fields) - set(RawProduct.model_fields)) - {
    "provenance",
    "confidence",
}


def is_populated(value: Any) -> bool:
    """A value counts as set unless it is None or an empty collection."""
    if value is None:
        return False
    if isinstance(value, (list, tuple, set, dict, str)):
        return len(value) > 0
    return True


class EnrichedProduct(ParsedProduct):
    """Final enrichment output handed to the indexing side. Immutable."""

    model_config = {"frozen": True}

    benefit_snippet: str | None = None
    faq: list[dict[str, str]] = Field(default_factory=list)
    synonyms_multi: dict[str, list[str]] = Field(default_factory=dict)
    dosage_text: str | None = None
    timing_text: str | None = None
    safety_flags: list[dict[str, Any]] = Field(default_factory=list)
    ai_conflicts: list[dict[str, Any]] = Field(default_factory=list)
    goal_scores: dict[str, dict[str, float]] = Field(default_factory=dict)
    ai_fill: dict[str, Any] = Field(default_factory=dict)
    ai_input_hash: str | None = None
    ai_enrichment_ts: int | None = None
    enrichment_version: int | None = None
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_parsed(cls, parsed: ParsedProduct, warnings: list[str] | None = None) -> EnrichedProduct:
        return cls(**parsed.model_dump(), warnings=list(warnings or []))


class EnrichmentDelta(BaseModel):
    """Partial output of one stage: field updates with per-field confidence and source."""

    updates: dict[str, Any] = Field(default_factory=dict)
    confidence: dict[str, float] = Field(default_factory=dict)
    sources: dict[str, str] = Field(default_factory=dict)
    evidence: dict[str, str] = Field(default_factory=dict)

    def set(
        self,
        field: str,
        value: Any,
        confidence: float,
        source: str,
        evidence: str | None = None,
    ) -> EnrichmentDelta:
        if field not in ENRICHED_FIELDS:
            raise ValueError(f"Unknown enrichment field: {field}")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence out of range for {field}: {confidence}")
        self.updates[field] = value
        self.confidence[field] = confidence
        self.sources[field] = source
        if evidence:
            self.evidence[field] = evidence
        return self

    def is_empty(self) -> bool:
        return not self.updates


class WarnCode(str, Enum):
    """Advisory warning categories attached to an enriched product."""

    FIELD_CONFLICT = "FIELD_CONFLICT"
    MISSING_CRITICAL = "MISSING_CRITICAL"
    UNIT_AMBIGUITY = "UNIT_AMBIGUITY"
    BAD_VARIATION_GROUP = "BAD_VARIATION_GROUP"
    UNSUPPORTED_CLAIM = "UNSUPPORTED_CLAIM"
    INGREDIENT_PARSE_FAIL = "INGREDIENT_PARSE_FAIL"


class Warn(BaseModel):
    """One advisory warning, attributable to a product and optionally a field."""

    model_config = {"frozen": True}

    product_id: str
    code: WarnCode
    field: str | None = None
    message: str
    evidence: str | None = None

    def render(self) -> str:
        return f"{self.code.value}: {self.message}"

    @classmethod
    def field_conflict(
        cls, product_id: str, field: str, det_value: Any, ai_value: Any, evidence: str | None = None
    ) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.FIELD_CONFLICT,
            field=field,
            message=f"Deterministic value '{det_value}' conflicts with AI value '{ai_value}'",
            evidence=evidence,
        )

    @classmethod
    def conflict(cls, product_id: str, field: str, message: str, evidence: str | None = None) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.FIELD_CONFLICT,
            field=field,
            message=message,
            evidence=evidence,
        )

    @classmethod
    def missing_critical(cls, product_id: str, field: str) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.MISSING_CRITICAL,
            field=field,
            message=f"Critical field '{field}' is missing",
        )

    @classmethod
    def unit_ambiguity(cls, product_id: str, field: str, evidence: str | None = None) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.UNIT_AMBIGUITY,
            field=field,
            message=f"Unit ambiguity in field '{field}'",
            evidence=evidence,
        )

    @classmethod
    def bad_variation_group(cls, product_id: str, evidence: str | None = None) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.BAD_VARIATION_GROUP,
            field="parent_id",
            message="Failed to group product variations",
            evidence=evidence,
        )

    @classmethod
    def unsupported_claim(cls, product_id: str, claim: str, evidence: str | None = None) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.UNSUPPORTED_CLAIM,
            message=f"Unsupported claim: {claim}",
            evidence=evidence,
        )

    @classmethod
    def ingredient_parse_fail(cls, product_id: str, evidence: str | None = None) -> Warn:
        return cls(
            product_id=product_id,
            code=WarnCode.INGREDIENT_PARSE_FAIL,
            field="ingredients_key",
            message="Failed to parse ingredients",
            evidence=evidence,
        )
