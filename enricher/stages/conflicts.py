"""ConflictDetector — last deterministic stage: final form fallback, contradictions, completeness.

Missing-critical checks run against the effective form, including the fallback
form this stage proposes itself, so a product whose form was only settled here
is judged by the rules of that form.
"""

from __future__ import annotations

import re

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.stages.base import (
    CAPSULE_TOKEN_RE,
    COUNT_BASED_FORMS,
    POWDER_TOKEN_RE,
    TABLET_TOKEN_RE,
    StageResult,
    product_text,
)

FALLBACK_CONFIDENCE = 0.5

_BROAD_UNIT_HINT_RE = re.compile(r"caps|kaps|softgel|tablet|tabl|капс|табл", re.IGNORECASE)


def fallback_form(raw: RawProduct, so_far: ParsedProduct) -> str | None:
    text = product_text(raw)
    if not (_BROAD_UNIT_HINT_RE.search(text) or so_far.unit_count):
        return None
    return "tabs" if TABLET_TOKEN_RE.search(text) else "capsules"


def form_conflicts(raw: RawProduct, form: str | None) -> list[Warn]:
    """Contradictions between the chosen form and the product name."""
    name = raw.name or ""
    if not form or not name:
        return []
    if form in ("capsules", "tabs") and POWDER_TOKEN_RE.search(name):
        return [Warn.conflict(raw.id, "form", f"Title mentions powder while form is {form}")]
    if form == "powder" and (CAPSULE_TOKEN_RE.search(name) or TABLET_TOKEN_RE.search(name)):
        return [Warn.conflict(raw.id, "form", "Title mentions capsules/tabs while form is powder")]
    return []


def missing_critical(product_id: str, so_far: ParsedProduct, form: str | None) -> list[Warn]:
    warnings: list[Warn] = []
    has_servings = so_far.servings is not None or (
        so_far.servings_min is not None and so_far.servings_max is not None
    )
    count_based = form in COUNT_BASED_FORMS

    servings_required = not count_based or so_far.units_per_serving is not None
    if servings_required and not has_servings:
        warnings.append(Warn.missing_critical(product_id, "servings"))
    if not count_based and so_far.net_weight_g is None:
        warnings.append(Warn.missing_critical(product_id, "net_weight_g"))
    if form is None:
        warnings.append(Warn.missing_critical(product_id, "form"))
    return warnings


class ConflictDetector:
    name = "conflict_detector"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        delta = EnrichmentDelta()
        form = so_far.form
        if form is None:
            form = fallback_form(raw, so_far)
            if form is not None:
                delta.set("form", form, FALLBACK_CONFIDENCE, "heuristic")

        warnings = form_conflicts(raw, form)
        warnings.extend(missing_critical(raw.id, so_far, form))
        return StageResult(delta=delta, warnings=warnings)
