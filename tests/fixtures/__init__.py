"""
Test fixtures for the ingestion pipeline tests.

Factory helpers:
- make_item()
- make_options()
- FakeConnector
- FakeClock
- load_fixture()
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from timeline_ingest.models.items import FetchOptions, NormalizedItem
from timeline_ingest.services.item_normalization import build_item

FIXTURES_DIR = Path(__file__).parent
BASE_TIME = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


def make_item(
    title: str = "Test Item",
    url: str = "https://example.com/post",
    source: str = "test_source",
    hours_ago: float = 0,
    published_at: Optional[datetime] = None,
    summary: Optional[str] = None,
    authors: Optional[List[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> NormalizedItem:
    """Factory function to create a NormalizedItem relative to BASE_TIME."""
    return build_item(
        source_id=source,
        title=title,
        url=url,
        published_at=published_at or BASE_TIME - timedelta(hours=hours_ago),
        summary=summary,
        authors=authors,
        metadata=metadata,
    )


def make_options(
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
    max_items: Optional[int] = None,
) -> FetchOptions:
    """Factory function for a fetch window around BASE_TIME (two days back, one day ahead)."""
    return FetchOptions(
        window_start=window_start or BASE_TIME - timedelta(days=2),
        window_end=window_end or BASE_TIME + timedelta(days=1),
        max_items=max_items,
        correlation_id="test-run",
    )


class FakeConnector:
    """In-memory connector; raises ``error`` on the first ``fail_times`` calls (all calls when None)."""

    kind = "fake"

    def __init__(
        self,
        connector_id: str,
        items: Optional[List[NormalizedItem]] = None,
        error: Optional[Exception] = None,
        fail_times: Optional[int] = None,
    ) -> None:
        self.id = connector_id
        self.items = list(items or [])
        self.error = error
        self.fail_times = fail_times
        self.calls = 0
        self.options: List[FetchOptions] = []

    async def fetch(self, options: FetchOptions) -> List[NormalizedItem]:
        self.calls += 1
        self.options.append(options)
        if self.error is not None and (self.fail_times is None or self.calls <= self.fail_times):
            raise self.error
        return list(self.items)


class FakeClock:
    """Monotonic clock stand-in for breaker and rate-limit timing."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
