"""VariationGrouper — a shared grouping key for flavor/size variants of one product."""

from __future__ import annotations

import re
import unicodedata

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.stages.base import StageResult

CONFIDENCE = 0.8

FLAVOR_WORDS = (
    "unflavored", "flavored", "vanilla", "vanill", "chocolate", "sokolaad", "šokolaad", "cocoa",
    "strawberry", "maasikas", "raspberry", "vaarikas", "berry", "blueberry", "mustikas",
    "metsamarja", "banana", "banaan", "banaanijogurt", "jogurt", "citrus", "orange", "apelsin",
    "lemon", "sidrun", "lime", "laim", "cola", "kola", "cherry", "kirss", "apple", "õun", "oun",
    "mango", "peach", "virsik", "pear", "pirn", "coffee", "kohv", "mocha", "caramel", "karamell",
    "coconut", "kookos", "tropical", "troopiline",
)

_TRAILING_BRACKET_RE = re.compile(r"\s*[(\[][^)\]]{1,40}[)\]]\s*$")
_FLAVOR_RE = re.compile(
    r"\b(?:" + "|".join(sorted(map(re.escape, FLAVOR_WORDS), key=len, reverse=True)) + r")\b"
)
_FLAVOR_SUFFIX_RE = re.compile(r"\s*-\s*maitse.*$")
_SIZE_RE = re.compile(r"\b\d{1,4}(?:[.,]\d+)?\s*(?:gramm|kg|ml|g|l)\b")
_COUNT_RE = re.compile(
    r"\b\d{1,3}\s*(?:servings?|portsjonid?|capsules?|kapslid|tablets?|tabletid|tabs)\b"
)
_TRAILING_FORM_RE = re.compile(
    r"(?:\s+(?:powder|pulber|capsules?|kapslid|tablets?|tabletid|tabs|drink|jook|gel|geel|bar|batoon))+\s*$"
)
_WS_RE = re.compile(r"\s+")


def normalize_base_title(name: str) -> str:
    """Lowercased product name without flavor, size, count and trailing form words."""
    base = _WS_RE.sub(" ", name.lower()).strip()
    base = _TRAILING_BRACKET_RE.sub("", base)
    base = _FLAVOR_RE.sub(" ", base)
    base = _FLAVOR_SUFFIX_RE.sub("", base)
    base = _SIZE_RE.sub(" ", base)
    base = _COUNT_RE.sub(" ", base)
    base = _WS_RE.sub(" ", base).strip()
    base = _TRAILING_FORM_RE.sub("", " " + base)
    base = _WS_RE.sub(" ", base).strip()
    return base.rstrip(" -–—").strip()


def slugify(text: str) -> str:
    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"\s+", "-", ascii_text.lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


class VariationGrouper:
    name = "variation_grouper"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        if not raw.name or not raw.brand_slug:
            return StageResult()

        base = normalize_base_title(raw.name)
        parent_id = slugify(f"{raw.brand_slug}-{base}") if base else ""
        if not base or parent_id == slugify(raw.brand_slug):
            warn = Warn.bad_variation_group(raw.id, evidence=raw.name)
            return StageResult(warnings=[warn])

        delta = EnrichmentDelta()
        delta.set("parent_id", parent_id, CONFIDENCE, "heuristic")
        delta.set("variant_group_id", parent_id, CONFIDENCE, "heuristic")
        return StageResult(delta=delta)
