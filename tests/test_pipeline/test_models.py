"""Tests for product models, deltas and warnings."""

import pytest

from enricher.pipeline.models import (
    ENRICHED_FIELDS,
    EnrichedProduct,
    EnrichmentDelta,
    ParsedProduct,
    RawProduct,
    Warn,
    WarnCode,
    is_populated,
)


class TestRawProduct:
    def test_frozen(self):
        raw = RawProduct(id="wc_1", name="Creatine")
        with pytest.raises(Exception):
            raw.name = "Other"

    def test_defaults(self):
        raw = RawProduct(id="wc_1")
        assert raw.dynamic_attrs == {}
        assert raw.category_names == []
        assert raw.search_text == ""


class TestParsedProduct:
    def test_from_raw_copies_raw_fields(self):
        raw = RawProduct(
            id="wc_1",
            name="Creatine 300g",
            category_names=["Kreatiin"],
            dynamic_attrs={"attr_pa_maitse": ["ei-mingit-maitset"]},
        )
        parsed = ParsedProduct.from_raw(raw)
        assert parsed.id == "wc_1"
        assert parsed.name == "Creatine 300g"
        assert parsed.form is None
        assert parsed.provenance == {}

    def test_mutating_parsed_does_not_touch_raw(self):
        raw = RawProduct(id="wc_1", category_names=["Kreatiin"])
        parsed = ParsedProduct.from_raw(raw)
        parsed.category_names.append("Extra")
        parsed.form = "powder"
        assert raw.category_names == ["Kreatiin"]

    def test_enriched_fields_exclude_raw_and_bookkeeping(self):
        assert "form" in ENRICHED_FIELDS
        assert "display_title" in ENRICHED_FIELDS
        assert "name" not in ENRICHED_FIELDS
        assert "provenance" not in ENRICHED_FIELDS
        assert "confidence" not in ENRICHED_FIELDS


class TestIsPopulated:
    def test_values(self):
        assert not is_populated(None)
        assert not is_populated([])
        assert not is_populated("")
        assert is_populated(0)
        assert is_populated(False)
        assert is_populated(["vegan"])


class TestEnrichmentDelta:
    def test_set_records_confidence_and_source(self):
        delta = EnrichmentDelta().set("form", "powder", 0.95, "attribute", evidence="pulber")
        assert delta.updates == {"form": "powder"}
        assert delta.confidence == {"form": 0.95}
        assert delta.sources == {"form": "attribute"}
        assert delta.evidence == {"form": "pulber"}
        assert not delta.is_empty()

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            EnrichmentDelta().set("name", "Other", 0.9, "regex")

    def test_confidence_bounds(self):
        with pytest.raises(ValueError):
            EnrichmentDelta().set("form", "powder", 1.5, "regex")
        with pytest.raises(ValueError):
            EnrichmentDelta().set("form", "powder", -0.1, "regex")

    def test_empty(self):
        assert EnrichmentDelta().is_empty()


class TestWarn:
    def test_render(self):
        warn = Warn.missing_critical("wc_1", "servings")
        assert warn.code == WarnCode.MISSING_CRITICAL
        assert warn.render() == "MISSING_CRITICAL: Critical field 'servings' is missing"

    def test_field_conflict_message(self):
        warn = Warn.field_conflict("wc_1", "form", "capsules", "powder")
        assert warn.field == "form"
        assert warn.message == "Deterministic value 'capsules' conflicts with AI value 'powder'"

    def test_bad_variation_group_targets_parent_id(self):
        warn = Warn.bad_variation_group("wc_1", evidence="Chocolate")
        assert warn.field == "parent_id"
        assert warn.render().startswith("BAD_VARIATION_GROUP:")

    def test_unsupported_claim_has_no_field(self):
        warn = Warn.unsupported_claim("wc_1", "cures fatigue")
        assert warn.field is None
        assert warn.message == "Unsupported claim: cures fatigue"


class TestEnrichedProduct:
    def test_from_parsed_is_frozen_and_carries_warnings(self):
        parsed = ParsedProduct(id="wc_1", form="powder", provenance={"form": "attribute"})
        product = EnrichedProduct.from_parsed(parsed, ["MISSING_CRITICAL: x"])
        assert product.form == "powder"
        assert product.provenance == {"form": "attribute"}
        assert product.warnings == ["MISSING_CRITICAL: x"]
        with pytest.raises(Exception):
            product.form = "capsules"

    def test_json_round_trip(self):
        parsed = ParsedProduct(id="wc_1", goal_tags=["strength"], servings=60)
        product = EnrichedProduct.from_parsed(parsed)
        restored = EnrichedProduct.model_validate_json(product.model_dump_json())
        assert restored == product
