"""IngredientTokenizer — scrape an explicit ingredient list into short normalized tokens."""

from __future__ import annotations

import re

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.stages.base import StageResult

CONFIDENCE = 0.9

HEADERS = ("ingredients:", "koostisosad:", "состав:")
TERMINATORS = ("</", "<br", "\n\n", "\r\n\r\n", "</p>")
STOPWORDS = frozenset(
    {
        "and", "or", "with", "from", "of", "the", "a", "an", "in", "to",
        "sisaldab", "koos", "ja", "või",
        "из", "и", "с", "для", "в",
    }
)
MAX_TOKEN_WORDS = 3
MIN_HEAD_LENGTH = 3

_MARKUP_RE = re.compile(r"[<>/\n]")
_SPLIT_RE = re.compile(r"[;,]")
_CLEAN_RE = re.compile(r"[^a-zа-яёõäöüšž\- ]")
_WS_RE = re.compile(r"\s+")


def ingredient_section(description: str) -> str | None:
    """Text after the first ingredient header, cut at the first block terminator."""
    lowered = description.lower()
    positions = [(lowered.find(h), h) for h in HEADERS if lowered.find(h) >= 0]
    if not positions:
        return None
    start, header = min(positions)
    section = lowered[start + len(header) :]
    cuts = [section.find(t) for t in TERMINATORS if section.find(t) >= 0]
    if cuts:
        section = section[: min(cuts)]
    return section


def tokenize_ingredients(section: str) -> list[str]:
    tokens: list[str] = []
    for part in _SPLIT_RE.split(_MARKUP_RE.sub(" ", section)):
        cleaned = _WS_RE.sub(" ", _CLEAN_RE.sub(" ", part)).strip(" -")
        if not cleaned:
            continue
        words = cleaned.split(" ")
        if len(words) > MAX_TOKEN_WORDS:
            continue
        head = words[0]
        if head in STOPWORDS or len(head) < MIN_HEAD_LENGTH:
            continue
        if cleaned not in tokens:
            tokens.append(cleaned)
    return tokens


class IngredientTokenizer:
    name = "ingredient_tokenizer"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        if not raw.description:
            return StageResult()
        section = ingredient_section(raw.description)
        if section is None:
            return StageResult()

        tokens = tokenize_ingredients(section)
        if not tokens:
            warn = Warn.ingredient_parse_fail(raw.id, evidence=section.strip()[:120] or None)
            return StageResult(warnings=[warn])

        delta = EnrichmentDelta().set("ingredients_key", tokens, CONFIDENCE, "regex")
        return StageResult(delta=delta)
