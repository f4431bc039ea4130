"""Enrichment pipeline — fixed-order deterministic stages plus an optional AI lane.

Stage order (fixed, and significant for ambiguous products):
1. Normalizer — form/flavor from attributes, heuristic form fallback
2. UnitParser — weights, servings, unit counts, sanity corrections
3. ServingCalculator — servings from weight / serving size
4. PriceCalculator — price, discount, unit economics
5. IngredientTokenizer — explicit ingredient lists
6. TaxonomyParser — goal and diet tags
7. VariationGrouper — variant grouping key
8. TitleComposer — display title (optional)
9. ConflictDetector — final form fallback, contradictions, completeness

The batch side mirrors a per-run ledger: records and warnings are written to
JSONL atomically, with run metadata alongside.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel

from enricher.ai_engine.engine import AIEnricher, merge_ai_result
from enricher.config.settings import PipelineConfig
from enricher.pipeline.models import (
    ENRICHED_FIELDS,
    EnrichedProduct,
    EnrichmentDelta,
    ParsedProduct,
    RawProduct,
    Warn,
    is_populated,
)
from enricher.stages.base import Stage
from enricher.stages.conflicts import ConflictDetector
from enricher.stages.ingredients import IngredientTokenizer
from enricher.stages.normalizer import Normalizer
from enricher.stages.price import PriceCalculator
from enricher.stages.serving import ServingCalculator
from enricher.stages.taxonomy import TaxonomyParser
from enricher.stages.title import TitleComposer
from enricher.stages.units import UnitParser
from enricher.stages.variation import VariationGrouper
from enricher.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


def build_stages(compose_titles: bool = True) -> list[Stage]:
    stages: list[Stage] = [
        Normalizer(),
        UnitParser(),
        ServingCalculator(),
        PriceCalculator(),
        IngredientTokenizer(),
        TaxonomyParser(),
        VariationGrouper(),
    ]
    if compose_titles:
        stages.append(TitleComposer())
    stages.append(ConflictDetector())
    return stages


def apply_delta(parsed: ParsedProduct, delta: EnrichmentDelta) -> None:
    """Merge a stage delta into the accumulator, keeping provenance in step with values.

    A populated value records its source and confidence. A None or empty value
    clears the field along with its provenance.
    """
    for name, value in delta.updates.items():
        if name not in ENRICHED_FIELDS:
            logger.warning("Unknown field in enrichment delta", extra={"field": name})
            continue
        if value is None and isinstance(getattr(parsed, name), list):
            value = []
        setattr(parsed, name, value)
        if is_populated(value):
            parsed.provenance[name] = delta.sources.get(name, "derived")
            parsed.confidence[name] = delta.confidence.get(name, 0.5)
        else:
            parsed.provenance.pop(name, None)
            parsed.confidence.pop(name, None)


@dataclass
class EnrichmentResult:
    product: EnrichedProduct
    warnings: list[Warn] = field(default_factory=list)


class EnrichmentPipeline:
    """Runs the deterministic stages over one product at a time.

    Holds no per-product state, so one instance can be shared across worker threads.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        ai_enricher: AIEnricher | None = None,
    ) -> None:
        self._config = config or PipelineConfig()
        self._stages = build_stages(self._config.compose_titles)
        self._ai = ai_enricher

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self._stages]

    def run(self, raw: RawProduct) -> EnrichmentResult:
        logger.info("Starting enrichment", extra={"product_id": raw.id})
        parsed = ParsedProduct.from_raw(raw)
        warnings: list[Warn] = []

        for stage in self._stages:
            try:
                result = stage.apply(raw, parsed)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.STAGE_FAILED,
                    message=str(exc),
                    suppressed=True,
                    product_id=raw.id,
                    stage=stage.name,
                )
                continue
            apply_delta(parsed, result.delta)
            warnings.extend(result.warnings)
            logger.debug(
                "Applied stage",
                extra={"product_id": raw.id, "stage": stage.name, "fields": sorted(result.delta.updates)},
            )

        product = EnrichedProduct.from_parsed(parsed, [w.render() for w in warnings])

        if self._ai is not None and self._ai.is_active:
            try:
                ai_result = self._ai.enrich(raw, parsed)
                if ai_result:
                    product, ai_warnings = merge_ai_result(product, ai_result)
                    warnings.extend(ai_warnings)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.STAGE_FAILED,
                    message=str(exc),
                    suppressed=True,
                    product_id=raw.id,
                    stage="ai_enricher",
                )

        logger.info(
            "Completed enrichment",
            extra={"product_id": raw.id, "warnings": len(warnings)},
        )
        return EnrichmentResult(product=product, warnings=warnings)

    def enrich(self, raw: RawProduct) -> EnrichedProduct:
        return self.run(raw).product


class RunMetadata(BaseModel):
    """Metadata for a completed batch run, stored alongside data."""

    run_id: str
    source: str = ""
    started_at: datetime
    completed_at: datetime | None = None
    total_records: int = 0
    total_warnings: int = 0
    failed_products: int = 0
    ai_calls: int = 0
    status: str = "running"


class BatchEnricher:
    """Enriches a feed with bounded parallelism and persists one run ledger.

    Contract: a failing product is logged and skipped, never aborting the batch.
    Persist is atomic per file: records are written to a temp file and renamed.
    """

    def __init__(
        self,
        pipeline: EnrichmentPipeline,
        run_id: str,
        data_dir: Path,
        max_workers: int = 4,
    ) -> None:
        self._pipeline = pipeline
        self._run_id = run_id
        self._max_workers = max(1, max_workers)

        self._run_dir = data_dir / run_id
        self._run_dir.mkdir(parents=True, exist_ok=True)
        self._output_path = self._run_dir / "records.jsonl"
        self._warnings_path = self._run_dir / "warnings.jsonl"
        self._metadata_path = self._run_dir / "metadata.json"

        self._records: list[EnrichedProduct] = []
        self._warnings: list[Warn] = []
        self._failed: list[str] = []

    @property
    def run_dir(self) -> Path:
        return self._run_dir

    @property
    def output_path(self) -> Path:
        return self._output_path

    @property
    def records(self) -> list[EnrichedProduct]:
        return list(self._records)

    @property
    def warnings(self) -> list[Warn]:
        return list(self._warnings)

    @property
    def failed_ids(self) -> list[str]:
        return list(self._failed)

    def enrich_all(self, raws: Iterable[RawProduct]) -> list[EnrichedProduct]:
        """Enrich every product, keeping input order in the output."""
        items = list(raws)
        results: dict[int, EnrichmentResult] = {}

        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {executor.submit(self._pipeline.run, raw): idx for idx, raw in enumerate(items)}
            for future in as_completed(futures):
                idx = futures[future]
                try:
                    results[idx] = future.result()
                except Exception as exc:
                    emit_structured_error(
                        logger,
                        code=ErrorCode.PRODUCT_ENRICHMENT_FAILED,
                        message=str(exc),
                        suppressed=True,
                        product_id=items[idx].id,
                    )
                    self._failed.append(items[idx].id)

        enriched: list[EnrichedProduct] = []
        for idx in sorted(results):
            enriched.append(results[idx].product)
            self._warnings.extend(results[idx].warnings)
        self._records.extend(enriched)

        logger.info(
            "Batch enrichment finished",
            extra={
                "run_id": self._run_id,
                "records": len(enriched),
                "failed": len(self._failed),
            },
        )
        return enriched

    def persist(self, metadata: RunMetadata) -> int:
        """Atomically persist enriched records and warnings to JSONL.

        Returns the number of records persisted.
        """
        if not self._records:
            return 0

        self._write_atomic(self._output_path, (r.model_dump_json() for r in self._records))
        self._write_atomic(self._warnings_path, (w.model_dump_json() for w in self._warnings))

        metadata.total_records = len(self._records)
        metadata.total_warnings = len(self._warnings)
        metadata.failed_products = len(self._failed)
        metadata.completed_at = datetime.now(timezone.utc)
        metadata.status = "completed"
        self._metadata_path.write_text(metadata.model_dump_json(indent=2))

        return len(self._records)

    @staticmethod
    def _write_atomic(path: Path, lines: Iterable[str]) -> None:
        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                for line in lines:
                    f.write(line + "\n")
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    @staticmethod
    def load_records(output_path: Path) -> list[EnrichedProduct]:
        """Load persisted records from a JSONL file."""
        records = []
        if output_path.exists():
            with open(output_path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(EnrichedProduct.model_validate_json(line))
        return records

    @staticmethod
    def load_warnings(warnings_path: Path) -> list[Warn]:
        warnings = []
        if warnings_path.exists():
            with open(warnings_path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        warnings.append(Warn.model_validate_json(line))
        return warnings
