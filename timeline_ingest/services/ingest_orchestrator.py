"""
One ingestion run: window -> concurrent connector fetches -> merge & cap ->
deduplicate -> (optional) analyze -> (optional) publish.

Every connector fetch runs under its own circuit breaker inside a retry
policy. A failing connector contributes zero items and an error; only a run
where every connector failed is fatal.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

from timeline_ingest.core.circuit_breaker import CircuitBreakerRegistry
from timeline_ingest.core.errors import AggregateError, AnalysisError
from timeline_ingest.core.logging import get_logger
from timeline_ingest.core.request_id import get_run_id, new_correlation_id, with_connector_id, with_run_id
from timeline_ingest.core.retry import RetryConfig, RetryPolicyRegistry, with_retry
from timeline_ingest.models.items import FetchOptions, NormalizedItem
from timeline_ingest.models.pipeline import PipelineConfig
from timeline_ingest.services.connectors.base import SourceConnector
from timeline_ingest.services.connectors.factory import compute_ingestion_window
from timeline_ingest.services.dedupe_service import DedupeConfig, DeduplicationService, deduplication_stats
from timeline_ingest.services.metrics_service import ConnectorRunStats, IngestionMetrics, RunSummary
from timeline_ingest.services.pipeline_interfaces import Analyzer, Publisher

logger = get_logger()

T = TypeVar("T")


@dataclass
class IngestionBatch:
    correlation_id: str
    window_start: datetime
    window_end: datetime
    items: List[NormalizedItem] = field(default_factory=list)
    collected: List[NormalizedItem] = field(default_factory=list)
    total_before_limit: int = 0
    connector_stats: List[ConnectorRunStats] = field(default_factory=list)
    errors: List[BaseException] = field(default_factory=list)
    metrics: IngestionMetrics = field(default_factory=IngestionMetrics)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class IngestionOrchestrator:
    def __init__(
        self,
        connectors: Sequence[SourceConnector],
        *,
        window_days: float = 3,
        pipeline: Optional[PipelineConfig] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_policies: Optional[RetryPolicyRegistry] = None,
        deduplicator: Optional[DeduplicationService] = None,
        analyzer: Optional[Analyzer] = None,
        publisher: Optional[Publisher] = None,
        dry_run: bool = False,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if window_days < 0:
            raise ValueError("window_days must be >= 0")
        self.connectors = list(connectors)
        self.window_days = window_days
        self.pipeline = pipeline or PipelineConfig()
        self.breakers = breakers or CircuitBreakerRegistry(self.pipeline.circuit_breaker.to_breaker_config())
        self.retry_policies = retry_policies or RetryPolicyRegistry()
        self.deduplicator = deduplicator or DeduplicationService(DedupeConfig.from_settings(self.pipeline.dedupe))
        self.analyzer = analyzer
        self.publisher = publisher
        self.dry_run = dry_run
        self._now = now or (lambda: datetime.now(timezone.utc))

    # -------- policies -------------------------------------------------------

    def _retry_config(self, policy: Optional[str] = None) -> RetryConfig:
        try:
            return self.pipeline.retries.resolve(self.retry_policies, policy)
        except KeyError:
            logger.warning("retry_policy_unknown", policy=policy, fallback=self.pipeline.retries.policy)
            return self.pipeline.retries.resolve(self.retry_policies)

    async def _guarded(
        self,
        breaker_name: str,
        retry_config: RetryConfig,
        fn: Callable[[], Awaitable[T]],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        """Retry on the outside, breaker on each attempt, so every try is bookkept."""
        breaker = self.breakers.get(breaker_name)
        return await with_retry(
            retry_config,
            lambda: breaker.execute(fn),
            cancel_event=cancel_event,
            operation=breaker_name,
        )

    # -------- collection -----------------------------------------------------

    async def _fetch_one(
        self,
        connector: SourceConnector,
        options: FetchOptions,
    ) -> Tuple[ConnectorRunStats, List[NormalizedItem], Optional[BaseException]]:
        runtime = getattr(connector, "runtime", None)
        retry_config = self._retry_config(getattr(runtime, "retry_policy", None))
        started = time.perf_counter()

        with with_connector_id(connector.id):
            try:
                items = await self._guarded(
                    f"connector:{connector.id}",
                    retry_config,
                    lambda: connector.fetch(options),
                    cancel_event=options.cancel_event,
                )
            except Exception as exc:
                latency = _elapsed_ms(started)
                logger.error(
                    "connector_fetch_failed",
                    source_id=connector.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    latency_ms=latency,
                )
                stats = ConnectorRunStats(
                    id=connector.id,
                    latency_ms=latency,
                    success=False,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return stats, [], exc

            latency = _elapsed_ms(started)
            logger.info("connector_fetch_ok", source_id=connector.id, items=len(items), latency_ms=latency)
            return ConnectorRunStats(id=connector.id, item_count=len(items), latency_ms=latency), list(items), None

    async def _ingest(self, metrics: IngestionMetrics, cancel_event: Optional[asyncio.Event]) -> IngestionBatch:
        correlation_id = get_run_id() or new_correlation_id()
        window_start, window_end = compute_ingestion_window(self.window_days, self._now())
        batch = IngestionBatch(
            correlation_id=correlation_id,
            window_start=window_start,
            window_end=window_end,
            metrics=metrics,
        )

        if not self.connectors:
            logger.warning("ingest_no_connectors")
            return batch

        options = FetchOptions(
            window_start=window_start,
            window_end=window_end,
            max_items=self.pipeline.limits.max_items_per_source,
            correlation_id=correlation_id,
            cancel_event=cancel_event,
        )
        logger.info(
            "ingest_started",
            connectors=len(self.connectors),
            window_start=window_start.isoformat(),
            window_end=window_end.isoformat(),
            max_items_per_source=options.max_items,
        )

        results = await asyncio.gather(*(self._fetch_one(c, options) for c in self.connectors))

        collected: List[NormalizedItem] = []
        for stats, items, error in results:
            metrics.record_connector(stats)
            batch.connector_stats.append(stats)
            if error is not None:
                batch.errors.append(error)
            collected.extend(items)

        if len(batch.errors) == len(self.connectors):
            raise AggregateError("All connectors failed", batch.errors)

        # sorted() is stable, so equal timestamps keep connector order.
        collected = sorted(collected, key=lambda item: item.published_at, reverse=True)
        batch.total_before_limit = len(collected)
        max_per_run = self.pipeline.limits.max_items_per_run
        if max_per_run is not None:
            collected = collected[:max_per_run]
        batch.collected = collected

        batch.items = self.deduplicator.deduplicate(collected)
        stats = deduplication_stats(collected, batch.items)
        metrics.record_dedupe(stats)
        logger.info(
            "ingest_collected",
            succeeded=metrics.succeeded,
            failed=metrics.failed,
            total_before_limit=batch.total_before_limit,
            after_limit=len(collected),
            after_deduplication=len(batch.items),
            duplicates_removed=stats["duplicates_removed"],
        )
        return batch

    async def ingest(self, cancel_event: Optional[asyncio.Event] = None) -> IngestionBatch:
        """
        Collect, cap and deduplicate one batch.

        Raises AggregateError when every connector failed.
        """
        return await self._ingest(IngestionMetrics(), cancel_event)

    # -------- downstream -----------------------------------------------------

    async def _call_collaborator(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        metrics: IngestionMetrics,
    ) -> T:
        started = time.perf_counter()
        try:
            result = await self._guarded(name, self._retry_config(), fn)
        except Exception as exc:
            metrics.record_call(name, _elapsed_ms(started), success=False, error=str(exc))
            raise
        metrics.record_call(name, _elapsed_ms(started), success=True)
        return result

    async def _analyze(self, items: List[NormalizedItem], summary: RunSummary, metrics: IngestionMetrics) -> List[Any]:
        if self.analyzer is None or not items:
            return []
        analysis = self.pipeline.analysis
        try:
            analyzed = await self._call_collaborator(
                "analyzer",
                lambda: self.analyzer.analyze(
                    items,
                    significance_threshold=analysis.significance_threshold,
                    max_selected=analysis.max_selected,
                ),
                metrics,
            )
        except Exception as exc:
            error = AnalysisError(str(exc), exc)
            logger.error("ingest_analysis_failed", error_type=type(exc).__name__, error=str(exc))
            summary.errors.append(str(error))
            return []
        return list(analyzed or [])

    async def _publish(self, selected: List[Any], summary: RunSummary, metrics: IngestionMetrics) -> None:
        if not selected or self.publisher is None:
            return
        if self.dry_run:
            logger.info("ingest_publish_skipped", reason="dry_run", selected=len(selected))
            return
        try:
            summary.publish_url = await self._call_collaborator(
                "publisher",
                lambda: self.publisher.publish(selected),
                metrics,
            )
        except Exception as exc:
            logger.error("ingest_publish_failed", error_type=type(exc).__name__, error=str(exc))
            summary.errors.append(f"Publish failed: {exc}")

    async def run(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        *,
        batch_sink: Optional[Callable[[IngestionBatch], Any]] = None,
    ) -> RunSummary:
        """
        Full run. Connector failures never raise here: a total failure is
        reported through ``RunSummary.fatal_error``. ``batch_sink`` receives
        the deduplicated batch before analysis.
        """
        started = time.perf_counter()
        with with_run_id(get_run_id()) as run_id:
            metrics = IngestionMetrics()
            summary = RunSummary(correlation_id=run_id)
            try:
                batch = await self._ingest(metrics, cancel_event)
            except AggregateError as exc:
                summary.fatal_error = str(exc)
                summary.errors.extend(str(e) for e in exc.errors)
                summary.connectors = list(metrics.connectors.values())
                summary.failed = metrics.failed
                summary.duration_ms = _elapsed_ms(started)
                logger.error("ingest_run_failed", error=str(exc), **exc.summary())
                logger.info("ingest_run_summary", **summary.to_dict())
                return summary

            summary.window_start = batch.window_start
            summary.window_end = batch.window_end
            summary.connectors = batch.connector_stats
            summary.succeeded = metrics.succeeded
            summary.failed = metrics.failed
            summary.errors.extend(str(e) for e in batch.errors)
            summary.total_collected = len(batch.collected)
            summary.total_before_limit = batch.total_before_limit
            summary.after_deduplication = len(batch.items)
            if batch_sink is not None:
                batch_sink(batch)

            analyzed = await self._analyze(batch.items, summary, metrics)
            selected = analyzed[: self.pipeline.analysis.max_selected]
            summary.analyzed = len(analyzed)
            summary.selected = len(selected)
            await self._publish(selected, summary, metrics)

            summary.duration_ms = _elapsed_ms(started)
            logger.info("ingest_run_summary", **summary.to_dict())
            return summary
