"""Stage contract and shared helpers for the deterministic enrichment stages.

A stage is a small object with a ``name`` and an ``apply(raw, so_far)`` method.
It reads the raw record and the accumulator, and returns a StageResult holding
its delta and any warnings. Stages never mutate their inputs and keep no
per-call state on the instance.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.pipeline.text import collapse_whitespace, strip_html

ATTR_FORM = "attr_pa_valjalaske-vorm"
ATTR_FLAVOR = "attr_pa_maitse"
ATTR_NET_WEIGHT = "attr_pa_grammide-arv"
ATTR_SERVINGS = "attr_pa_portsjonite-arv"
ATTR_TABLET_COUNT = "attr_pa_tablettide-arv"
ATTR_CAPSULE_COUNT = "attr_pa_kapslite-arv"
ATTR_VEGAN = "attr_pa_kas-see-on-veganisobralik"
ATTR_GOAL = "attr_pa_milleks"

COUNT_BASED_FORMS = frozenset({"capsules", "tabs"})
WEIGHT_BASED_FORMS = frozenset({"powder", "drink", "gel", "bar"})

CAPSULE_TOKEN_RE = re.compile(
    r"\b(?:capsules?|caps|vcaps|softgels?|kapsl\w*|pehmekapsl\w*|капсул\w*)\b", re.IGNORECASE
)
TABLET_TOKEN_RE = re.compile(r"\b(?:tablets?|tabs|tablett\w*|таблет\w*)\b", re.IGNORECASE)
POWDER_TOKEN_RE = re.compile(r"\b(?:powder|pulber|порошок)\b", re.IGNORECASE)

_LOCALE_SUFFIXES = ("-et", "-ru", "-en")
_BOOLEAN_VALUES = {"jah": True, "yes": True, "ei": False, "no": False}


@dataclass
class StageResult:
    delta: EnrichmentDelta = field(default_factory=EnrichmentDelta)
    warnings: list[Warn] = field(default_factory=list)


class Stage(Protocol):
    name: str

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult: ...


def attr_values(raw: RawProduct, key: str) -> list[str]:
    return [v for v in raw.dynamic_attrs.get(key, []) if v is not None and str(v).strip()]


def first_attr(raw: RawProduct, key: str) -> str | None:
    values = attr_values(raw, key)
    return str(values[0]).strip() if values else None


def attr_bool(raw: RawProduct, key: str) -> bool | None:
    value = first_attr(raw, key)
    if value is None:
        return None
    return _BOOLEAN_VALUES.get(strip_locale_suffix(value.lower()))


def strip_locale_suffix(slug: str) -> str:
    for suffix in _LOCALE_SUFFIXES:
        if slug.endswith(suffix):
            return slug[: -len(suffix)]
    return slug


def product_text(raw: RawProduct) -> str:
    """Name plus the flattened search text, or the stripped description when absent."""
    body = raw.search_text or strip_html(raw.description)
    return collapse_whitespace(f"{raw.name or ''} {body}")


def category_text(raw: RawProduct) -> str:
    return " ".join([*raw.category_names, *raw.category_slugs]).lower()
