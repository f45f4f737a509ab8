from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from timeline_ingest.core.logging import get_logger
from timeline_ingest.models.pipeline import PipelineConfig
from timeline_ingest.models.sources import (
    ApiSourceConfig,
    HtmlSourceConfig,
    RssSourceConfig,
    SourceConfig,
    SourceDefaults,
    SourcesFile,
)
from timeline_ingest.services.connectors.api_connector import PaginatedApiConnector
from timeline_ingest.services.connectors.base import (
    DEFAULT_CONNECTOR_TIMEOUT_MS,
    ConnectorRuntime,
    SourceConnector,
)
from timeline_ingest.services.connectors.html_connector import StructuredHtmlConnector
from timeline_ingest.services.connectors.rss_connector import RssConnector

logger = get_logger()


def create_connector(
    config: SourceConfig,
    defaults: Optional[SourceDefaults] = None,
    *,
    fallback_timeout_ms: int = DEFAULT_CONNECTOR_TIMEOUT_MS,
    user_agent: Optional[str] = None,
) -> Optional[SourceConnector]:
    """Connector for one source config, or None when disabled or unsupported."""
    if not config.enabled:
        logger.info("connector_disabled", source_id=config.id, kind=config.kind)
        return None

    runtime = ConnectorRuntime.resolve(
        config,
        defaults,
        fallback_timeout_ms=fallback_timeout_ms,
        user_agent=user_agent,
    )
    if isinstance(config, RssSourceConfig):
        return RssConnector(config, runtime)
    if isinstance(config, ApiSourceConfig):
        return PaginatedApiConnector(config, runtime)
    if isinstance(config, HtmlSourceConfig):
        return StructuredHtmlConnector(config, runtime)

    logger.warning("connector_kind_unsupported", source_id=config.id, kind=config.kind)
    return None


def build_connectors(
    sources: SourcesFile,
    *,
    pipeline: Optional[PipelineConfig] = None,
    user_agent: Optional[str] = None,
) -> List[SourceConnector]:
    fallback_timeout_ms = pipeline.timeouts.connector_ms if pipeline else DEFAULT_CONNECTOR_TIMEOUT_MS
    connectors: List[SourceConnector] = []
    for config in sources.sources:
        connector = create_connector(
            config,
            sources.defaults,
            fallback_timeout_ms=fallback_timeout_ms,
            user_agent=user_agent,
        )
        if connector is not None:
            connectors.append(connector)
    logger.info(
        "connectors_built",
        configured=len(sources.sources),
        active=len(connectors),
        ids=[c.id for c in connectors],
    )
    return connectors


def compute_ingestion_window(
    window_days: float,
    reference: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """``(now - window_days, now)`` in UTC."""
    if window_days < 0:
        raise ValueError("window_days must be >= 0")
    window_end = reference or datetime.now(timezone.utc)
    if window_end.tzinfo is None:
        window_end = window_end.replace(tzinfo=timezone.utc)
    return window_end - timedelta(days=window_days), window_end
