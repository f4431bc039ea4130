"""Tests for Store API feed conversion and loading."""

import json
import logging

import pytest

from enricher.pipeline.feed import build_search_text, load_feed, raw_product_from_store_json
from enricher.telemetry.errors import ErrorCode

DYMATIZE_PAYLOAD = {
    "id": 12345,
    "type": "simple",
    "sku": "DYM-BCAA-400",
    "name": "Dymatize BCAA 2200 caps",
    "slug": "dymatize-bcaa-2200-capsules-400",
    "permalink": "https://example.com/toode/dymatize-bcaa-2200-capsules-400/",
    "description": "<p>Form: Capsules (400 capsules / 2200 mg per serving)</p><p>Take 4 capsules daily.</p>",
    "prices": {
        "price": "3290",
        "regular_price": "3990",
        "sale_price": "3290",
        "currency_code": "EUR",
    },
    "is_in_stock": True,
    "average_rating": "4.50",
    "review_count": 12,
    "images": [{"id": 1, "src": "https://example.com/bcaa.jpg"}, {"id": 2}],
    "categories": [{"id": 10, "slug": "bcaa", "name": "BCAA"}],
    "attributes": [
        {"taxonomy": "pa_tablettide-arv", "terms": [{"slug": "400", "name": "400"}]},
        {"taxonomy": "pa_tootja", "terms": [{"slug": "dymatize", "name": "Dymatize"}]},
        {"taxonomy": "custom", "terms": [{"slug": "ignored"}]},
    ],
}


class TestRawProductFromStoreJson:
    def test_core_fields(self):
        raw = raw_product_from_store_json(DYMATIZE_PAYLOAD)
        assert raw.id == "wc_12345"
        assert raw.sku == "DYM-BCAA-400"
        assert raw.price_cents == 3290
        assert raw.regular_price_cents == 3990
        assert raw.currency == "EUR"
        assert raw.is_in_stock is True
        assert raw.average_rating == 4.5
        assert raw.images == ["https://example.com/bcaa.jpg"]
        assert raw.category_slugs == ["bcaa"]
        assert raw.category_ids == [10]

    def test_attributes_and_brand(self):
        raw = raw_product_from_store_json(DYMATIZE_PAYLOAD)
        assert raw.dynamic_attrs["attr_pa_tablettide-arv"] == ["400"]
        assert "attr_custom" not in raw.dynamic_attrs
        assert raw.brand_slug == "dymatize"
        assert raw.brand_name == "Dymatize"

    def test_search_text_is_plain(self):
        raw = raw_product_from_store_json(DYMATIZE_PAYLOAD)
        assert "<p>" not in raw.search_text
        assert raw.search_text.startswith("Dymatize BCAA 2200 caps Form: Capsules")
        assert raw.search_text.endswith("BCAA Dymatize")
        assert raw.description.startswith("<p>")

    def test_bad_numbers_become_none(self):
        payload = {"id": 7, "prices": {"price": "n/a"}, "average_rating": "", "review_count": "many"}
        raw = raw_product_from_store_json(payload)
        assert raw.price_cents is None
        assert raw.average_rating is None
        assert raw.review_count is None

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            raw_product_from_store_json({"name": "No id"})
        with pytest.raises(ValueError):
            raw_product_from_store_json(["not", "an", "object"])

    def test_build_search_text(self):
        text = build_search_text("Whey", "<b>Great</b>&nbsp;taste", ["Protein"], None)
        assert text == "Whey Great taste Protein"


class TestLoadFeed:
    def test_array_feed(self, tmp_path):
        path = tmp_path / "feed.json"
        path.write_text(json.dumps([DYMATIZE_PAYLOAD, {"id": 2, "name": "Creatine"}]))
        products = load_feed(path)
        assert [p.id for p in products] == ["wc_12345", "wc_2"]

    def test_object_feed_skips_invalid_records(self, tmp_path, caplog):
        path = tmp_path / "feed.json"
        path.write_text(json.dumps({"products": [{"name": "No id"}, {"id": 3}]}))
        with caplog.at_level(logging.ERROR):
            products = load_feed(path)
        assert [p.id for p in products] == ["wc_3"]
        assert any(
            getattr(record, "error_code", None) == ErrorCode.FEED_RECORD_INVALID.value
            for record in caplog.records
        )

    def test_non_list_feed_rejected(self, tmp_path):
        path = tmp_path / "feed.json"
        path.write_text(json.dumps({"products": "nope"}))
        with pytest.raises(ValueError):
            load_feed(path)
