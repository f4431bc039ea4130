"""Tests for the enrichment pipeline and the batch run ledger."""

import logging
from datetime import datetime, timezone

import pytest

from enricher.config.settings import PipelineConfig
from enricher.pipeline.feed import raw_product_from_store_json
from enricher.pipeline.manager import (
    BatchEnricher,
    EnrichmentPipeline,
    RunMetadata,
    apply_delta,
)
from enricher.pipeline.models import (
    ENRICHED_FIELDS,
    EnrichedProduct,
    EnrichmentDelta,
    ParsedProduct,
    RawProduct,
    is_populated,
)
from enricher.telemetry.errors import ErrorCode


def make_raw(product_id: str = "wc_1", name: str = "", description: str = "", **kwargs) -> RawProduct:
    return RawProduct(id=product_id, name=name, description=description, **kwargs)


def warnings_with(product, prefix: str) -> list[str]:
    return [w for w in product.warnings if w.startswith(prefix)]


class StubAIEnricher:
    is_active = True

    def __init__(self, result: dict):
        self._result = result
        self.calls = 0

    def enrich(self, raw, parsed=None):
        self.calls += 1
        return self._result


class BrokenAIEnricher:
    is_active = True

    def enrich(self, raw, parsed=None):
        raise AttributeError("'list' object has no attribute 'get'")


class ExplodingStage:
    name = "exploding"

    def apply(self, raw, so_far):
        raise RuntimeError("boom")


@pytest.fixture
def pipeline():
    return EnrichmentPipeline(PipelineConfig(compose_titles=True))


class TestApplyDelta:
    def test_records_provenance(self):
        parsed = ParsedProduct(id="wc_1")
        apply_delta(parsed, EnrichmentDelta().set("form", "powder", 0.95, "attribute"))
        assert parsed.form == "powder"
        assert parsed.provenance == {"form": "attribute"}
        assert parsed.confidence == {"form": 0.95}

    def test_clearing_a_field_drops_provenance(self):
        parsed = ParsedProduct(id="wc_1")
        apply_delta(parsed, EnrichmentDelta().set("goal_tags", ["strength"], 0.8, "heuristic"))
        apply_delta(parsed, EnrichmentDelta().set("goal_tags", None, 0.8, "heuristic"))
        assert parsed.goal_tags == []
        assert "goal_tags" not in parsed.provenance
        assert "goal_tags" not in parsed.confidence


class TestEnrichmentPipeline:
    def test_stage_order(self, pipeline):
        assert pipeline.stage_names == [
            "normalizer",
            "unit_parser",
            "serving_calculator",
            "price_calculator",
            "ingredient_tokenizer",
            "taxonomy_parser",
            "variation_grouper",
            "title_composer",
            "conflict_detector",
        ]

    def test_title_composer_can_be_disabled(self):
        pipeline = EnrichmentPipeline(PipelineConfig(compose_titles=False))
        assert "title_composer" not in pipeline.stage_names
        product = pipeline.enrich(make_raw(name="Whey Protein 1 kg"))
        assert product.display_title is None

    def test_softgels_are_capsules_without_form_warnings(self, pipeline):
        raw = make_raw(
            name="MST Omega 3 Selected 60 softgels",
            description="Toote nimetus: MST Omega 3 Selected 60 softgels Vorm: Pehmekapslid (softgels), "
            "60 kapslit pudelis",
        )
        product = pipeline.enrich(raw)
        assert product.form == "capsules"
        assert product.servings == 60
        assert not [w for w in product.warnings if "form" in w]

    def test_powder_with_parenthetical_serving(self, pipeline):
        raw = make_raw(name="Test Powder 300g", description="portsjon (5 g). Pakend: 60 portsjonit.")
        product = pipeline.enrich(raw)
        assert product.form == "powder"
        assert product.net_weight_g == 300.0
        assert product.serving_size_g == 5.0
        assert product.servings == 60
        assert product.warnings == []

    def test_capsules_without_servings_fall_back_to_count(self, pipeline):
        raw = make_raw(
            name="NOW Taurine 500mg 100 veg caps",
            dynamic_attrs={"attr_pa_tablettide-arv": ["100"]},
        )
        product = pipeline.enrich(raw)
        assert product.form == "capsules"
        assert product.servings == 100
        assert not [w for w in product.warnings if "servings" in w]

    def test_capsules_with_dosing_have_servings(self, pipeline):
        raw = make_raw(
            name="NOW Taurine 500mg 100 veg caps",
            description="Per serving 1 capsule (500 mg). 100 tablets per bottle.",
            dynamic_attrs={"attr_pa_tablettide-arv": ["100"]},
        )
        product = pipeline.enrich(raw)
        assert product.units_per_serving == 1
        assert product.servings == 100
        assert product.net_weight_g == 50.0
        assert warnings_with(product, "MISSING_CRITICAL") == []

    def test_single_serving_weight_corrected(self, pipeline):
        raw = make_raw(
            name="Whey Protein",
            description="Per serving 5 g. Pakend: 60 portsjonit.",
            dynamic_attrs={"attr_pa_grammide-arv": ["5"]},
        )
        product = pipeline.enrich(raw)
        assert product.net_weight_g == 300.0
        assert product.provenance["net_weight_g"] == "corrected"
        assert warnings_with(product, "UNIT_AMBIGUITY") == []

    def test_noisy_servings_corrected(self, pipeline):
        raw = make_raw(
            name="Whey Protein",
            description="Serving size 5 g per serving.",
            dynamic_attrs={"attr_pa_portsjonite-arv": ["5"], "attr_pa_grammide-arv": ["300"]},
        )
        product = pipeline.enrich(raw)
        assert product.servings == 60
        assert warnings_with(product, "UNIT_AMBIGUITY") == []

    def test_store_feed_product(self, pipeline):
        payload = {
            "id": 12345,
            "name": "Dymatize BCAA 2200 caps",
            "description": "<p>Form: Capsules (400 capsules / 2200 mg per serving)</p>"
            "<p>Take 4 capsules daily.</p>",
            "prices": {"price": "3290", "currency_code": "EUR"},
            "categories": [{"id": 10, "slug": "bcaa", "name": "BCAA"}],
            "attributes": [
                {"taxonomy": "pa_tablettide-arv", "terms": [{"slug": "400", "name": "400"}]},
                {"taxonomy": "pa_tootja", "terms": [{"slug": "dymatize", "name": "Dymatize"}]},
            ],
        }
        product = pipeline.enrich(raw_product_from_store_json(payload))
        assert product.form == "capsules"
        assert product.unit_count == 400
        assert product.servings == 100
        assert product.price == 32.9
        assert product.price_per_serving == 0.33
        assert product.price_per_100g is None
        assert product.display_title == "BCAA 2200 caps — Dymatize"
        assert product.parent_id is not None
        assert warnings_with(product, "UNIT_AMBIGUITY") == []

    def test_negated_vegan_text(self, pipeline):
        raw = make_raw(name="Test Whey Isolate", description="High-quality whey isolate. Non-vegan formula.")
        assert "vegan" not in pipeline.enrich(raw).diet_tags

    def test_vegan_attribute_no_wins(self, pipeline):
        raw = make_raw(
            name="Vegan Protein 1 kg",
            dynamic_attrs={"attr_pa_kas-see-on-veganisobralik": ["ei"]},
        )
        product = pipeline.enrich(raw)
        assert "vegan" not in product.diet_tags
        assert warnings_with(product, "FIELD_CONFLICT")

    def test_idempotent(self, pipeline):
        raw = make_raw(
            name="Gold Standard Whey 2,27 kg Vanilla",
            description="<p>Ingredients: whey protein isolate, cocoa, salt</p> Serving size 30 g.",
            brand_slug="optimum-nutrition",
            brand_name="Optimum Nutrition",
            price_cents=6990,
            category_names=["Proteiin"],
        )
        first = pipeline.run(raw)
        second = pipeline.run(raw)
        assert first.product.model_dump() == second.product.model_dump()
        assert [w.render() for w in first.warnings] == first.product.warnings
        assert first.product.warnings == second.product.warnings

    @pytest.mark.parametrize(
        "ai_result",
        [
            None,
            {
                "fill": {"flavor": "vanilla"},
                "generate": {"benefit_snippet": "Good.", "faq": [], "dosage_text": "30 g per day"},
                "goal_scores": {"recovery": {"score": 0.8, "confidence": 0.7}},
                "conflicts": [{"field": "form", "det_value": "powder", "ai_value": "capsules"}],
                "ai_input_hash": "abc",
                "ai_enrichment_ts": 1700000000,
                "enrichment_version": 1,
            },
        ],
    )
    def test_provenance_matches_populated_fields(self, ai_result):
        ai = StubAIEnricher(ai_result) if ai_result is not None else None
        pipeline = EnrichmentPipeline(PipelineConfig(compose_titles=True), ai_enricher=ai)
        raw = make_raw(
            name="Gold Standard Whey 2,27 kg Vanilla",
            description="<p>Ingredients: whey protein isolate, cocoa, salt</p> Serving size 30 g.",
            brand_slug="optimum-nutrition",
            brand_name="Optimum Nutrition",
            price_cents=6990,
            regular_price_cents=7990,
            sale_price_cents=6990,
            dynamic_attrs={"attr_pa_maitse": ["vaanil"]},
        )
        product = pipeline.enrich(raw)
        output_fields = ENRICHED_FIELDS | (
            set(EnrichedProduct.model_fields) - set(ParsedProduct.model_fields) - {"warnings"}
        )
        if ai is not None:
            assert product.benefit_snippet == "Good."
            assert product.provenance["benefit_snippet"] == "ai"
        for name in output_fields:
            populated = is_populated(getattr(product, name))
            assert populated == (name in product.provenance), name
            assert (name in product.provenance) == (name in product.confidence), name
        assert all(0.0 <= c <= 1.0 for c in product.confidence.values())

    def test_stage_failure_is_contained(self, pipeline, caplog):
        pipeline._stages.insert(0, ExplodingStage())
        raw = make_raw(name="Test Powder 300g", description="portsjon (5 g). Pakend: 60 portsjonit.")
        with caplog.at_level(logging.ERROR):
            product = pipeline.enrich(raw)
        assert product.form == "powder"
        assert product.servings == 60
        failures = [
            r for r in caplog.records if getattr(r, "error_code", None) == ErrorCode.STAGE_FAILED.value
        ]
        assert len(failures) == 1
        assert failures[0].stage == "exploding"

    def test_ai_result_merged_without_touching_deterministic_fields(self):
        ai = StubAIEnricher(
            {
                "fill": {"form": "capsules", "flavor": None},
                "generate": {
                    "benefit_snippet": "Fast-absorbing whey for recovery.",
                    "faq": [{"q": "When?", "a": "After training."}, {"q": "Missing answer"}],
                    "synonyms_multi": {"en": ["whey"], "ru": "bad"},
                },
                "conflicts": [{"field": "form", "det_value": "powder", "ai_value": "capsules"}],
                "safety_flags": [{"flag": "cures fatigue", "confidence": 0.9}],
                "goal_scores": {"recovery": {"score": 0.9, "confidence": 0.8}, "unknown": {"score": 1}},
                "ai_input_hash": "abc",
                "ai_enrichment_ts": 1700000000,
                "enrichment_version": 1,
            }
        )
        pipeline = EnrichmentPipeline(PipelineConfig(compose_titles=True), ai_enricher=ai)
        raw = make_raw(name="Test Powder 300g", description="portsjon (5 g). Pakend: 60 portsjonit.")
        result = pipeline.run(raw)
        product = result.product

        assert ai.calls == 1
        assert product.form == "powder"
        assert product.ai_fill == {"form": "capsules"}
        assert product.benefit_snippet == "Fast-absorbing whey for recovery."
        assert product.faq == [{"q": "When?", "a": "After training."}]
        assert product.synonyms_multi == {"en": ["whey"]}
        assert product.goal_scores == {"recovery": {"score": 0.9, "confidence": 0.8}}
        assert product.ai_enrichment_ts == 1700000000
        assert warnings_with(product, "FIELD_CONFLICT")
        assert warnings_with(product, "UNSUPPORTED_CLAIM: Unsupported claim: cures fatigue")
        assert len(result.warnings) == len(product.warnings)

    def test_empty_ai_result_leaves_product_alone(self):
        pipeline = EnrichmentPipeline(PipelineConfig(), ai_enricher=StubAIEnricher({}))
        product = pipeline.enrich(make_raw(name="Test Powder 300g"))
        assert product.benefit_snippet is None
        assert product.ai_input_hash is None

    def test_ai_failure_keeps_deterministic_product(self, caplog):
        pipeline = EnrichmentPipeline(PipelineConfig(), ai_enricher=BrokenAIEnricher())
        raw = make_raw(name="Test Powder 300g", description="portsjon (5 g). Pakend: 60 portsjonit.")
        with caplog.at_level(logging.ERROR):
            product = pipeline.enrich(raw)
        assert product.servings == 60
        assert product.benefit_snippet is None
        failures = [r for r in caplog.records if getattr(r, "error_code", None) == ErrorCode.STAGE_FAILED]
        assert [r.stage for r in failures] == ["ai_enricher"]


class FlakyPipeline(EnrichmentPipeline):
    def run(self, raw):
        if raw.id == "bad":
            raise RuntimeError("corrupt record")
        return super().run(raw)


class TestBatchEnricher:
    @pytest.fixture
    def batch(self, tmp_path):
        pipeline = FlakyPipeline(PipelineConfig())
        return BatchEnricher(pipeline, run_id="test-run", data_dir=tmp_path, max_workers=3)

    def raws(self) -> list[RawProduct]:
        return [
            make_raw("wc_1", name="Test Powder 300g", description="portsjon (5 g). Pakend: 60 portsjonit."),
            make_raw("bad", name="Broken"),
            make_raw("wc_2", name="Magnesium tablets"),
            make_raw("wc_3", name="Mystery"),
        ]

    def test_order_preserved_and_failures_skipped(self, batch):
        records = batch.enrich_all(self.raws())
        assert [r.id for r in records] == ["wc_1", "wc_2", "wc_3"]
        assert batch.failed_ids == ["bad"]
        assert any(w.product_id == "wc_3" for w in batch.warnings)

    def test_ai_failure_does_not_drop_products(self, tmp_path):
        pipeline = EnrichmentPipeline(PipelineConfig(), ai_enricher=BrokenAIEnricher())
        batch = BatchEnricher(pipeline, run_id="ai-run", data_dir=tmp_path, max_workers=2)
        records = batch.enrich_all([make_raw("wc_1", name="Whey Protein 1 kg")])
        assert [r.id for r in records] == ["wc_1"]
        assert records[0].net_weight_g == 1000.0
        assert batch.failed_ids == []

    def test_persist_and_load(self, batch):
        batch.enrich_all(self.raws())
        metadata = RunMetadata(run_id="test-run", source="feed.json", started_at=datetime.now(timezone.utc))
        count = batch.persist(metadata)

        assert count == 3
        assert batch.output_path.exists()
        assert metadata.status == "completed"
        assert metadata.failed_products == 1
        assert metadata.total_warnings == len(batch.warnings)

        loaded = BatchEnricher.load_records(batch.output_path)
        assert [r.id for r in loaded] == ["wc_1", "wc_2", "wc_3"]
        assert loaded[0] == batch.records[0]

        warnings = BatchEnricher.load_warnings(batch.run_dir / "warnings.jsonl")
        assert warnings == batch.warnings

        stored = RunMetadata.model_validate_json((batch.run_dir / "metadata.json").read_text())
        assert stored.total_records == 3
        assert not list(batch.run_dir.glob("*.tmp"))

    def test_persist_without_records(self, batch):
        metadata = RunMetadata(run_id="test-run", started_at=datetime.now(timezone.utc))
        assert batch.persist(metadata) == 0
        assert not batch.output_path.exists()
        assert metadata.status == "running"

    def test_load_missing_file(self, tmp_path):
        assert BatchEnricher.load_records(tmp_path / "missing.jsonl") == []
