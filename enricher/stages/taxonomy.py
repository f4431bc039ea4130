"""TaxonomyParser — goal and diet tags from categories, text and taxonomy attributes.

Goal and diet tags are unions over every source, deduplicated and sorted.
The vegan tag is special: an explicit "no" attribute or a negated mention
("non-vegan", "not vegan", "ei ole vegan") blocks it regardless of positive
mentions elsewhere. Only an explicit "yes" attribute outranks a negated mention.
"""

from __future__ import annotations

import re

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.stages.base import (
    ATTR_GOAL,
    ATTR_VEGAN,
    StageResult,
    attr_bool,
    attr_values,
    product_text,
)

GOAL_CONFIDENCE = 0.8
DIET_ATTRIBUTE_CONFIDENCE = 0.95
DIET_TEXT_CONFIDENCE = 0.9

GOAL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "preworkout": ("preworkout", "pre-workout", "enne treeningut", "до тренировки"),
    "strength": (
        "strength", "jõud", "joud", "сила", "muscle", "lihas", "creatine", "kreatiin", "креатин",
    ),
    "endurance": (
        "endurance", "vastupidavus", "выносливость", "stamina",
        "creatine", "kreatiin", "креатин",
    ),
    "lean_muscle": ("lean", "lean muscle", "lean lihas", "похудение"),
    "recovery": ("recovery", "taastumine", "восстановление", "post-workout"),
    "weight_loss": ("weight loss", "kaalulangus", "похудение", "fat burn"),
    "wellness": ("wellness", "tervis", "здоровье", "vitamin", "vitamiin"),
}

# Cues in the "what for" attribute, matched as substrings of its joined values.
GOAL_INTENT_CUES: dict[str, tuple[str, ...]] = {
    "strength": ("jõud", "joudu", "joud", "strength"),
    "endurance": ("vastupidavus", "endurance"),
    "recovery": ("taastumine", "recovery"),
    "weight_loss": ("kaal", "weight"),
    "wellness": ("tervis", "wellness"),
}


def _keyword_regex(keywords: tuple[str, ...]) -> re.Pattern[str]:
    alternation = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternation})")


GOAL_PATTERNS = {goal: _keyword_regex(keywords) for goal, keywords in GOAL_KEYWORDS.items()}

VEGAN_RE = re.compile(r"vegan|veganii|веган")
DIET_PATTERNS = {
    "gluten_free": re.compile(r"gluteenivaba|gluten.?free|без глютена"),
    "lactose_free": re.compile(r"laktoosivaba|lactose.?free|без лактозы"),
    "sugar_free": re.compile(r"sugar.?free|без сахара|suhkruvaba"),
}
_NEGATION_BEFORE_RE = re.compile(
    r"(?:\bnon[-\s]?|\b(?:not|mitte|ei\s+ole|ei|не)\s+(?:\w+\s+){0,2})$"
)
NEGATION_WINDOW = 40


def match_goals(text: str) -> set[str]:
    return {goal for goal, pattern in GOAL_PATTERNS.items() if pattern.search(text)}


def goal_intents(values: list[str]) -> set[str]:
    joined = " ".join(values).lower()
    goals = {goal for goal, cues in GOAL_INTENT_CUES.items() if any(cue in joined for cue in cues)}
    if "enne" in joined and "treeningut" in joined:
        goals.add("preworkout")
    return goals


def vegan_mentions(text: str) -> tuple[int, int]:
    """Count (positive, negated) vegan mentions in lowercased text."""
    positive = negated = 0
    for match in VEGAN_RE.finditer(text):
        before = text[max(0, match.start() - NEGATION_WINDOW) : match.start()]
        if _NEGATION_BEFORE_RE.search(before):
            negated += 1
        else:
            positive += 1
    return positive, negated


class TaxonomyParser:
    name = "taxonomy_parser"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        delta = EnrichmentDelta()
        warnings: list[Warn] = []
        text = product_text(raw).lower()
        categories = " ".join(
            [
                *(n.lower() for n in raw.category_names),
                *(s.lower().replace("-", " ") for s in raw.category_slugs),
            ]
        )

        goals = match_goals(categories) | match_goals(text) | goal_intents(attr_values(raw, ATTR_GOAL))
        if goals:
            delta.set("goal_tags", sorted(goals), GOAL_CONFIDENCE, "heuristic")

        diets = {
            diet
            for diet, pattern in DIET_PATTERNS.items()
            if pattern.search(text) or pattern.search(categories)
        }

        vegan_attr = attr_bool(raw, ATTR_VEGAN)
        positive, negated = vegan_mentions(f"{categories} {text}")
        if vegan_attr is True:
            diets.add("vegan")
            if negated:
                warnings.append(
                    Warn.conflict(
                        raw.id,
                        "diet_tags",
                        "Vegan attribute is 'yes' but the text negates it",
                        evidence=f"negated mentions: {negated}",
                    )
                )
        elif vegan_attr is False:
            if positive:
                warnings.append(
                    Warn.conflict(
                        raw.id,
                        "diet_tags",
                        "Vegan attribute is 'no' but the text claims vegan",
                        evidence=f"positive mentions: {positive}",
                    )
                )
        elif positive and not negated:
            diets.add("vegan")

        if diets:
            if vegan_attr is not None:
                delta.set("diet_tags", sorted(diets), DIET_ATTRIBUTE_CONFIDENCE, "attribute")
            else:
                delta.set("diet_tags", sorted(diets), DIET_TEXT_CONFIDENCE, "regex")

        return StageResult(delta=delta, warnings=warnings)
