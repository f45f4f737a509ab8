from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional

from timeline_ingest.core.config import settings
from timeline_ingest.core.errors import ConfigurationError
from timeline_ingest.core.logging import configure_logging, get_logger, level_from_name
from timeline_ingest.core.request_id import with_run_id
from timeline_ingest.models.pipeline import load_pipeline_config
from timeline_ingest.models.sources import load_sources_config
from timeline_ingest.services.connectors.factory import build_connectors
from timeline_ingest.services.ingest_orchestrator import IngestionBatch, IngestionOrchestrator
from timeline_ingest.services.metrics_service import RunSummary

configure_logging(service_name="worker", level=level_from_name(settings.LOG_LEVEL))
logger = get_logger().bind(worker="ingest_bot")


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return parsed


def _positive_int(value: str) -> int:
    parsed = _non_negative_int(value)
    if parsed == 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return parsed


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="IngestBot: collect, normalize and deduplicate items from configured sources."
    )
    parser.add_argument("--sources", type=Path, default=None, help="Path to sources.yml (default: CONFIG_ROOT/sources.yml).")
    parser.add_argument("--pipeline", type=Path, default=None, help="Path to pipeline.yml (default: CONFIG_ROOT/pipeline.yml).")
    parser.add_argument("--window-days", type=_non_negative_int, default=None, help="Override window_days from sources.yml.")
    parser.add_argument("--max-items", type=_positive_int, default=None, help="Override limits.max_items_per_run.")
    parser.add_argument("--output", type=Path, default=None, help="Write the deduplicated batch as JSON to this file.")
    parser.add_argument("--dry-run", action="store_true", default=settings.DRY_RUN, help="Never publish.")
    return parser.parse_args(argv)


async def run_ingest(args: argparse.Namespace) -> RunSummary:
    sources = load_sources_config(args.sources)
    pipeline = load_pipeline_config(args.pipeline)

    max_items = args.max_items or settings.MAX_ITEMS_PER_RUN
    if max_items:
        pipeline = pipeline.model_copy(
            update={"limits": pipeline.limits.model_copy(update={"max_items_per_run": max_items})}
        )

    window_days = args.window_days if args.window_days is not None else sources.window_days
    orchestrator = IngestionOrchestrator(
        build_connectors(sources, pipeline=pipeline),
        window_days=window_days,
        pipeline=pipeline,
        dry_run=args.dry_run,
    )

    batch_sink = (lambda batch: write_batch(batch, args.output)) if args.output else None
    return await orchestrator.run(batch_sink=batch_sink)


def write_batch(batch: IngestionBatch, output: Path) -> int:
    payload = [item.to_payload() for item in batch.items]
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("ingest_bot_batch_written", path=str(output), items=len(payload))
    return len(payload)


async def main_async(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    with with_run_id():
        try:
            summary = await run_ingest(args)
        except ConfigurationError as exc:
            logger.error("ingest_bot_config_error", error=str(exc), path=exc.path)
            return 1
        print(json.dumps(summary.to_dict(), indent=2, default=str))
        if summary.fatal_error:
            logger.error("ingest_bot_failed", error=summary.fatal_error)
            return 1
        logger.info(
            "ingest_bot_finished",
            collected=summary.total_collected,
            after_deduplication=summary.after_deduplication,
            failed_connectors=summary.failed,
        )
        return 0


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
