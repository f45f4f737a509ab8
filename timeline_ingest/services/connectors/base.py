from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from timeline_ingest.core.config import settings
from timeline_ingest.core.errors import ConnectorFetchError, OperationCancelledError
from timeline_ingest.models.items import FetchOptions, NormalizedItem
from timeline_ingest.models.sources import SourceDefaults
from timeline_ingest.services.http_client import HttpFetcher, RequestRateLimiter

DEFAULT_CONNECTOR_TIMEOUT_MS = 15000


@runtime_checkable
class SourceConnector(Protocol):
    """Anything that can produce normalized items for a fetch window."""

    id: str
    kind: str

    async def fetch(self, options: FetchOptions) -> List[NormalizedItem]:
        ...


@dataclass(frozen=True)
class ConnectorRuntime:
    """
    Per-source settings resolved against the run-level defaults.

    Holds the source's request limiter, so every client it hands out shares
    one requests-per-minute budget.
    """

    source_id: str
    timeout_s: float
    rate_limit_qpm: Optional[int] = None
    user_agent: str = settings.HTTP_USER_AGENT
    tier: Optional[str] = None
    retry_policy: Optional[str] = None
    rate_limiter: Optional[RequestRateLimiter] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.rate_limiter is None and self.rate_limit_qpm:
            object.__setattr__(self, "rate_limiter", RequestRateLimiter(self.rate_limit_qpm))

    @classmethod
    def resolve(
        cls,
        config: Any,
        defaults: Optional[SourceDefaults] = None,
        *,
        fallback_timeout_ms: int = DEFAULT_CONNECTOR_TIMEOUT_MS,
        user_agent: Optional[str] = None,
        rate_limiter: Optional[RequestRateLimiter] = None,
    ) -> "ConnectorRuntime":
        defaults = defaults or SourceDefaults()
        timeout_ms = config.timeout_ms or defaults.timeout_ms or fallback_timeout_ms
        return cls(
            source_id=config.id,
            timeout_s=timeout_ms / 1000.0,
            rate_limit_qpm=config.rate_limit_qpm or defaults.rate_limit_qpm,
            user_agent=user_agent or settings.HTTP_USER_AGENT,
            tier=config.tier,
            retry_policy=config.retry_policy,
            rate_limiter=rate_limiter,
        )

    def http_fetcher(self) -> HttpFetcher:
        return HttpFetcher(
            user_agent=self.user_agent,
            timeout_s=self.timeout_s,
            rate_limiter=self.rate_limiter,
        )

    def item_metadata(self, **extra: Any) -> Dict[str, Any]:
        """Metadata stamped on every item of this source (drops empty values)."""
        metadata: Dict[str, Any] = {}
        if self.tier:
            metadata["tier"] = self.tier
        metadata.update({k: v for k, v in extra.items() if v not in (None, "", [], {})})
        return metadata


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Errors a connector lets through untouched; everything else is wrapped.
PASSTHROUGH_ERRORS = (ConnectorFetchError, OperationCancelledError)


def fetch_error(source_id: str, exc: Exception) -> ConnectorFetchError:
    """Connector-level failure with the original exception kept as cause for retry checks."""
    return ConnectorFetchError(source_id, str(exc) or type(exc).__name__, exc)
