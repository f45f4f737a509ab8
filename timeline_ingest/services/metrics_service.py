"""
Per-run metrics and the run summary.

One IngestionMetrics instance is created per orchestrator run; nothing here
is process-global.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class ConnectorRunStats:
    id: str
    item_count: int = 0
    latency_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class CallTiming:
    name: str
    latency_ms: float
    success: bool
    error: Optional[str] = None


class IngestionMetrics:
    def __init__(self) -> None:
        self.connectors: Dict[str, ConnectorRunStats] = {}
        self.calls: List[CallTiming] = []
        self.dedupe: Dict[str, Any] = {}

    def record_connector(self, stats: ConnectorRunStats) -> None:
        self.connectors[stats.id] = stats

    def record_call(self, name: str, latency_ms: float, *, success: bool, error: Optional[str] = None) -> None:
        self.calls.append(CallTiming(name=name, latency_ms=round(latency_ms, 2), success=success, error=error))

    def record_dedupe(self, stats: Dict[str, Any]) -> None:
        self.dedupe = dict(stats)

    @property
    def succeeded(self) -> int:
        return sum(1 for s in self.connectors.values() if s.success)

    @property
    def failed(self) -> int:
        return sum(1 for s in self.connectors.values() if not s.success)

    @property
    def total_items(self) -> int:
        return sum(s.item_count for s in self.connectors.values() if s.success)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "connectors": [asdict(s) for s in self.connectors.values()],
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total_items": self.total_items,
            "dedupe": dict(self.dedupe),
            "calls": [asdict(c) for c in self.calls],
        }


@dataclass
class RunSummary:
    correlation_id: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    connectors: List[ConnectorRunStats] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    total_collected: int = 0
    total_before_limit: int = 0
    after_deduplication: int = 0
    analyzed: int = 0
    selected: int = 0
    publish_url: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.fatal_error is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat() if self.window_start else None
        data["window_end"] = self.window_end.isoformat() if self.window_end else None
        data["success"] = self.success
        return data
