"""Store feed conversion — Store API product JSON to RawProduct.

Numbers that do not parse become None; a record without an id is rejected.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from enricher.pipeline.models import RawProduct
from enricher.pipeline.text import collapse_whitespace, strip_html
from enricher.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

ID_PREFIX = "wc_"
BRAND_TAXONOMY = "pa_tootja"


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _float_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _text_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def build_search_text(
    name: str | None,
    description: str | None,
    category_names: list[str],
    brand_name: str | None,
) -> str:
    parts = [name or "", strip_html(description), " ".join(category_names), brand_name or ""]
    return collapse_whitespace(" ".join(parts))


def raw_product_from_store_json(payload: dict[str, Any]) -> RawProduct:
    """Convert one Store API product object into a RawProduct."""
    if not isinstance(payload, dict):
        raise ValueError("product payload must be a JSON object")
    product_id = _int_or_none(payload.get("id"))
    if product_id is None:
        raise ValueError(f"product payload has no usable id: {payload.get('id')!r}")

    prices = payload.get("prices") if isinstance(payload.get("prices"), dict) else {}

    images = [
        img["src"]
        for img in payload.get("images") or []
        if isinstance(img, dict) and isinstance(img.get("src"), str)
    ]

    category_ids: list[int] = []
    category_slugs: list[str] = []
    category_names: list[str] = []
    for category in payload.get("categories") or []:
        if not isinstance(category, dict):
            continue
        if isinstance(category.get("id"), int):
            category_ids.append(category["id"])
        if isinstance(category.get("slug"), str):
            category_slugs.append(category["slug"])
        if isinstance(category.get("name"), str):
            category_names.append(category["name"])

    dynamic_attrs: dict[str, list[str]] = {}
    brand_slug: str | None = None
    brand_name: str | None = None
    for attribute in payload.get("attributes") or []:
        if not isinstance(attribute, dict):
            continue
        taxonomy = attribute.get("taxonomy")
        if not isinstance(taxonomy, str) or not taxonomy.startswith("pa_"):
            continue
        terms = [t for t in attribute.get("terms") or [] if isinstance(t, dict)]
        if taxonomy == BRAND_TAXONOMY and terms:
            brand_slug = _text_or_none(terms[0].get("slug"))
            brand_name = _text_or_none(terms[0].get("name"))
        dynamic_attrs[f"attr_{taxonomy}"] = [t["slug"] for t in terms if isinstance(t.get("slug"), str)]

    name = _text_or_none(payload.get("name"))
    description = _text_or_none(payload.get("description")) or ""

    return RawProduct(
        id=f"{ID_PREFIX}{product_id}",
        type=_text_or_none(payload.get("type")),
        sku=_text_or_none(payload.get("sku")),
        slug=_text_or_none(payload.get("slug")),
        name=name,
        permalink=_text_or_none(payload.get("permalink")),
        description=description,
        price_cents=_int_or_none(prices.get("price")),
        regular_price_cents=_int_or_none(prices.get("regular_price")),
        sale_price_cents=_int_or_none(prices.get("sale_price")),
        currency=_text_or_none(prices.get("currency_code")),
        is_in_stock=bool(payload.get("is_in_stock", False)),
        low_stock_remaining=_int_or_none(payload.get("low_stock_remaining")),
        average_rating=_float_or_none(payload.get("average_rating")),
        review_count=_int_or_none(payload.get("review_count")),
        images=images,
        category_ids=category_ids,
        category_slugs=category_slugs,
        category_names=category_names,
        brand_slug=brand_slug,
        brand_name=brand_name,
        dynamic_attrs=dynamic_attrs,
        search_text=build_search_text(name, description, category_names, brand_name),
    )


def load_feed(path: Path) -> list[RawProduct]:
    """Read a feed file (a JSON array, or an object with a "products" array).

    Records that cannot be converted are logged and skipped.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("products", [])
    if not isinstance(data, list):
        raise ValueError(f"Feed {path} does not contain a product list")

    products: list[RawProduct] = []
    for index, payload in enumerate(data):
        try:
            products.append(raw_product_from_store_json(payload))
        except ValueError as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.FEED_RECORD_INVALID,
                message=str(exc),
                suppressed=True,
                details={"index": index, "path": str(path)},
            )
    logger.info("Loaded feed", extra={"path": str(path), "products": len(products)})
    return products
