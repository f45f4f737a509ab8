"""
Downstream collaborators of an ingestion run.

Scoring and publishing live outside this package; the orchestrator only
needs these two call shapes.
"""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from timeline_ingest.models.items import NormalizedItem


@runtime_checkable
class Analyzer(Protocol):
    async def analyze(
        self,
        items: Sequence[NormalizedItem],
        *,
        significance_threshold: float,
        max_selected: int,
    ) -> List[Any]:
        """Return the analyzed events worth publishing (at most ``max_selected``)."""
        ...


@runtime_checkable
class Publisher(Protocol):
    async def publish(self, events: Sequence[Any]) -> Optional[str]:
        """Persist the selected events; return a handle such as a URL."""
        ...
