"""TitleComposer — display title with the leading brand token moved to the end.

The canonical ``name`` is left untouched; only ``display_title`` is produced.
"""

from __future__ import annotations

import re

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct
from enricher.pipeline.text import sanitize_title
from enricher.stages.base import StageResult

CONFIDENCE = 0.7
SEPARATOR = " — "

_DASH_SPACING_RE = re.compile(r"\s*([\-–—])\s*")
_WS_RE = re.compile(r"\s+")


def brand_aliases(brand_name: str | None, brand_slug: str | None) -> list[str]:
    """Spellings a brand may take at the start of a product name, longest intent first."""
    aliases: list[str] = []

    def add(alias: str | None) -> None:
        if alias and alias.strip() and alias not in aliases:
            aliases.append(alias.strip())

    if brand_name and brand_name.strip():
        cleaned = re.sub(r"[®™]", "", brand_name).strip()
        add(cleaned)
        if cleaned:
            add(cleaned.split()[0])
        acronym = "".join(ch for ch in cleaned if ch.isupper())
        if len(acronym) >= 2:
            add(acronym)
        add(re.sub(r"[^A-Za-z0-9]", "", cleaned))
    if brand_slug and brand_slug.strip():
        add(brand_slug)
        add(brand_slug.split("-")[0])
    return aliases


def strip_leading_brand(name: str, aliases: list[str]) -> str:
    result = name.strip()
    patterns = [
        re.compile(
            r"^\s*(" + re.escape(alias).replace(r"\ ", r"\s+") + r")"
            r"(?![A-Za-z0-9])[\u00a0\s]*[:;\-–—|]*\s*",
            re.IGNORECASE,
        )
        for alias in aliases
    ]
    changed = True
    while changed and result:
        changed = False
        for pattern in patterns:
            stripped = pattern.sub("", result, count=1).strip()
            if stripped != result:
                result = stripped
                changed = True
                break
    return result


def normalize_spaces_and_dashes(text: str) -> str:
    out = _WS_RE.sub(" ", text.replace("\u00a0", " "))
    return _DASH_SPACING_RE.sub(r"\1", out).strip()


def compose_display_title(name: str, brand_name: str | None, brand_slug: str | None) -> str:
    base = strip_leading_brand(name, brand_aliases(brand_name, brand_slug))
    base = sanitize_title(normalize_spaces_and_dashes(base or name))
    brand = (brand_name or "").strip() or (brand_slug or "").strip()
    display = f"{base}{SEPARATOR}{brand}" if brand else base
    return display.strip()


class TitleComposer:
    name = "title_composer"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        if not raw.name or not raw.name.strip():
            return StageResult()
        display = compose_display_title(raw.name, raw.brand_name, raw.brand_slug)
        if not display:
            return StageResult()
        delta = EnrichmentDelta().set("display_title", display, CONFIDENCE, "compose")
        return StageResult(delta=delta)
