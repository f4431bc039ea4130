#!/usr/bin/env python3
"""Enrich a store feed file and write the run ledger (records, warnings, metadata)."""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

from enricher.ai_engine.cache import JsonFileCache
from enricher.ai_engine.engine import AIEnricher
from enricher.ai_engine.rate_limiter import RateLimiter
from enricher.config.settings import EnricherConfig
from enricher.pipeline.feed import load_feed
from enricher.pipeline.manager import BatchEnricher, EnrichmentPipeline, RunMetadata

logger = logging.getLogger("enrich_feed")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("feed", type=Path, help="JSON feed file (array of Store API products)")
    parser.add_argument("--data-dir", type=Path, default=None, help="Output root directory")
    parser.add_argument("--run-id", default=None, help="Run identifier (default: random)")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads")
    parser.add_argument("--no-ai", action="store_true", help="Skip the AI augmentation lane")
    parser.add_argument("--clear-ai-cache", action="store_true", help="Drop the AI cache first")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = EnricherConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if not args.feed.exists():
        logger.error("Feed file not found: %s", args.feed)
        return 1

    ai_enricher: AIEnricher | None = None
    if config.ai.is_active and not args.no_ai:
        cache = JsonFileCache(config.ai.cache_path, config.ai.cache_ttl_s)
        if args.clear_ai_cache:
            cache.clear()
        ai_enricher = AIEnricher(
            config.ai,
            cache=cache,
            rate_limiter=RateLimiter(config.rate_limit),
            retry=config.retry,
        )

    pipeline = EnrichmentPipeline(config.pipeline, ai_enricher=ai_enricher)
    run_id = args.run_id or uuid.uuid4().hex[:12]
    batch = BatchEnricher(
        pipeline,
        run_id=run_id,
        data_dir=args.data_dir or config.pipeline.data_dir,
        max_workers=args.workers or config.pipeline.max_workers,
    )
    metadata = RunMetadata(run_id=run_id, source=str(args.feed), started_at=datetime.now(timezone.utc))

    try:
        batch.enrich_all(load_feed(args.feed))
        if ai_enricher is not None:
            metadata.ai_calls = ai_enricher.calls_made
        count = batch.persist(metadata)
    finally:
        if ai_enricher is not None:
            ai_enricher.close()

    logger.info(
        "Run %s: %d records, %d warnings, %d failed -> %s",
        run_id,
        count,
        len(batch.warnings),
        len(batch.failed_ids),
        batch.run_dir,
    )
    if ai_enricher is not None:
        snapshot = ai_enricher.accounting.snapshot_with_costs()
        logger.info(
            "AI: %d calls, %d cache hits, ~$%.2f",
            ai_enricher.calls_made,
            ai_enricher.cache_hits,
            ai_enricher.accounting.total_cost_usd(snapshot),
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
