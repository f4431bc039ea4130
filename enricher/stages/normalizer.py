"""Normalizer — canonical form and flavor from taxonomy attributes, with a text fallback for form."""

from __future__ import annotations

import re

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct
from enricher.stages.base import (
    ATTR_FLAVOR,
    ATTR_FORM,
    CAPSULE_TOKEN_RE,
    POWDER_TOKEN_RE,
    TABLET_TOKEN_RE,
    StageResult,
    category_text,
    first_attr,
    product_text,
    strip_locale_suffix,
)

FORM_MAP = {
    "pulber": "powder",
    "kapslid": "capsules",
    "tabletid": "tabs",
    "jook": "drink",
    "geel": "gel",
    "baar": "bar",
    "powder": "powder",
    "capsules": "capsules",
    "capsule": "capsules",
    "tablets": "tabs",
    "tabs": "tabs",
    "drink": "drink",
    "gel": "gel",
    "bar": "bar",
}

FLAVOR_MAP = {
    "ei-mingit-maitset": "unflavored",
    "maitse": "flavored",
    "tsitrus": "citrus",
    "marja": "berry",
    "kohv": "coffee",
    "sokolaad": "chocolate",
    "vaanil": "vanilla",
}

# Substring fallback order; generic "maitse" is exact-match only.
_FLAVOR_FRAGMENTS = ("ei-mingit-maitset", "tsitrus", "marja", "kohv", "sokolaad", "vaanil")

_CATEGORY_CAPSULE_RE = re.compile(r"kapsl|capsul|softgel")
_CATEGORY_TABLET_RE = re.compile(r"tablet")
_CATEGORY_POWDER_RE = re.compile(r"pulber|powder")
_GRAMS_RE = re.compile(r"\b\d+(?:[.,]\d+)?\s*(?:kg|g)\b", re.IGNORECASE)
_EXPLICIT_PULBER_RE = re.compile(r"\bpulber\b", re.IGNORECASE)

ATTRIBUTE_CONFIDENCE = 0.95
HEURISTIC_CONFIDENCE = 0.6


def normalize_form_slug(slug: str | None) -> str | None:
    if not slug:
        return None
    value = slug.strip().lower()
    if value in FORM_MAP:
        return FORM_MAP[value]
    value = strip_locale_suffix(value)
    if value in FORM_MAP:
        return FORM_MAP[value]
    for key, canonical in FORM_MAP.items():
        if key in value:
            return canonical
    return None


def normalize_flavor_slug(slug: str | None) -> str | None:
    if not slug:
        return None
    value = slug.strip().lower()
    if value in FLAVOR_MAP:
        return FLAVOR_MAP[value]
    value = strip_locale_suffix(value)
    if value in FLAVOR_MAP:
        return FLAVOR_MAP[value]
    for fragment in _FLAVOR_FRAGMENTS:
        if fragment in value:
            return FLAVOR_MAP[fragment]
    return None


def infer_form_from_text(raw: RawProduct) -> str | None:
    """Guess the form from token, category and grams evidence.

    Capsule evidence always wins. Tablet evidence wins over powder/grams unless the
    explicit "pulber" word is present. Otherwise powder tokens or a grams figure
    mean powder.
    """
    text = product_text(raw)
    categories = category_text(raw)

    capsule = bool(CAPSULE_TOKEN_RE.search(text) or _CATEGORY_CAPSULE_RE.search(categories))
    tablet = bool(TABLET_TOKEN_RE.search(text) or _CATEGORY_TABLET_RE.search(categories))
    powder = bool(POWDER_TOKEN_RE.search(text) or _CATEGORY_POWDER_RE.search(categories))
    grams = bool(_GRAMS_RE.search(text))

    if capsule:
        return "capsules"
    if tablet:
        return "powder" if _EXPLICIT_PULBER_RE.search(text) else "tabs"
    if powder or grams:
        return "powder"
    return None


class Normalizer:
    name = "normalizer"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        delta = EnrichmentDelta()

        form_attr = first_attr(raw, ATTR_FORM)
        form = normalize_form_slug(form_attr)
        if form:
            delta.set("form", form, ATTRIBUTE_CONFIDENCE, "attribute", evidence=form_attr)
        else:
            form = infer_form_from_text(raw)
            if form:
                delta.set("form", form, HEURISTIC_CONFIDENCE, "heuristic")

        flavor_attr = first_attr(raw, ATTR_FLAVOR)
        flavor = normalize_flavor_slug(flavor_attr)
        if flavor:
            delta.set("flavor", flavor, ATTRIBUTE_CONFIDENCE, "attribute", evidence=flavor_attr)

        return StageResult(delta=delta)
