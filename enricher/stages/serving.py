"""ServingCalculator — servings from net weight divided by serving size."""

from __future__ import annotations

from enricher.pipeline.models import EnrichmentDelta, ParsedProduct, RawProduct, Warn
from enricher.stages.base import StageResult

DERIVED_CONFIDENCE = 0.85
MAX_SERVINGS = 1000


class ServingCalculator:
    name = "serving_calculator"

    def apply(self, raw: RawProduct, so_far: ParsedProduct) -> StageResult:
        if so_far.servings is not None:
            return StageResult()
        if so_far.servings_min is not None or so_far.servings_max is not None:
            return StageResult()
        if not so_far.net_weight_g or not so_far.serving_size_g:
            return StageResult()

        ratio = so_far.net_weight_g / so_far.serving_size_g
        servings = round(ratio)
        if 0 < servings <= MAX_SERVINGS:
            delta = EnrichmentDelta().set("servings", servings, DERIVED_CONFIDENCE, "derived")
            return StageResult(delta=delta)

        warn = Warn.unit_ambiguity(
            raw.id, "servings", evidence=f"Calculated servings {ratio:.2f} seems unreasonable"
        )
        return StageResult(warnings=[warn])
