from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NormalizedItem(BaseModel):
    """
    Canonical representation of one ingested entry, whatever the source format.

    ``id`` is ``<YYYY-MM-DD>-<source id>-<short hash of source id + url>`` so a
    re-fetch of the same link always yields the same id; ``url`` is already
    canonicalized when the item is built.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    url: str
    published_at: datetime = Field(alias="publishedAt")
    source: str
    summary: Optional[str] = None
    authors: Optional[List[str]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """JSON shape handed to the analyzer (``publishedAt`` as ISO-8601)."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


@dataclass(frozen=True)
class FetchOptions:
    window_start: datetime
    window_end: datetime
    max_items: Optional[int] = None
    correlation_id: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None

    def __post_init__(self) -> None:
        if self.window_start > self.window_end:
            raise ValueError("window_start must be <= window_end")
        if self.max_items is not None and self.max_items < 0:
            raise ValueError("max_items must be >= 0")

    def contains(self, moment: datetime) -> bool:
        return self.window_start <= moment <= self.window_end

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "windowStart": self.window_start.isoformat(),
            "windowEnd": self.window_end.isoformat(),
        }
        if self.max_items is not None:
            data["maxItems"] = self.max_items
        if self.correlation_id:
            data["correlationId"] = self.correlation_id
        return data
