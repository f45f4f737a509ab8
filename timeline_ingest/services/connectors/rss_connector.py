from __future__ import annotations

from typing import Any, Dict, List, Optional

import feedparser

from timeline_ingest.core.logging import get_logger
from timeline_ingest.models.items import FetchOptions, NormalizedItem
from timeline_ingest.models.sources import RssSourceConfig
from timeline_ingest.services.connectors.base import (
    PASSTHROUGH_ERRORS,
    ConnectorRuntime,
    fetch_error,
    utc_now,
)
from timeline_ingest.services.item_normalization import (
    apply_fetch_window,
    build_item,
    canonicalize_url,
    dedupe_by_id,
    is_http_url,
    normalize_whitespace,
    parse_published_at,
    split_author_names,
    strip_html,
)

logger = get_logger()


def _first_content_value(entry: Dict[str, Any]) -> str:
    content = entry.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict):
                value = block.get("value")
                if isinstance(value, str) and value.strip():
                    return value
    return ""


def _entry_summary(entry: Dict[str, Any]) -> str:
    summary = entry.get("summary") or entry.get("description")
    if isinstance(summary, str) and summary.strip():
        return strip_html(summary)
    return strip_html(_first_content_value(entry))


def _entry_authors(entry: Dict[str, Any]) -> List[str]:
    authors = split_author_names(entry.get("authors") or [])
    if authors:
        return authors
    return split_author_names(entry.get("author") or "")


def _entry_published(entry: Dict[str, Any]):
    for key in ("published_parsed", "updated_parsed", "published", "updated", "created"):
        parsed = parse_published_at(entry.get(key))
        if parsed is not None:
            return parsed
    return None


class RssConnector:
    """RSS/Atom feed connector backed by feedparser."""

    kind = "rss"

    def __init__(self, config: RssSourceConfig, runtime: ConnectorRuntime) -> None:
        self.config = config
        self.runtime = runtime
        self.id = config.id

    async def fetch(self, options: FetchOptions) -> List[NormalizedItem]:
        try:
            async with self.runtime.http_fetcher() as http:
                body = await http.fetch_text(self.config.url, cancel_event=options.cancel_event)
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as exc:
            raise fetch_error(self.id, exc) from exc

        parsed = feedparser.parse(body)
        entries = list(getattr(parsed, "entries", []) or [])
        if not entries and getattr(parsed, "bozo", False):
            cause = getattr(parsed, "bozo_exception", None) or ValueError("unparsable feed")
            raise fetch_error(self.id, cause) from cause

        items: List[NormalizedItem] = []
        for entry in entries:
            try:
                item = self._normalize_entry(entry)
            except Exception as exc:
                logger.debug(
                    "rss_entry_skipped",
                    source_id=self.id,
                    reason="normalization_error",
                    error=str(exc),
                )
                continue
            if item is not None:
                items.append(item)

        result = apply_fetch_window(dedupe_by_id(items), options)
        logger.info(
            "rss_feed_fetched",
            source_id=self.id,
            entries=len(entries),
            normalized=len(items),
            in_window=len(result),
        )
        return result

    def _normalize_entry(self, entry: Dict[str, Any]) -> Optional[NormalizedItem]:
        title = strip_html(entry.get("title") or "")
        link = normalize_whitespace(entry.get("link") or "")
        if not title or not link:
            logger.debug("rss_entry_skipped", source_id=self.id, reason="missing_title_or_link")
            return None

        url = canonicalize_url(link, base=self.config.url)
        if not is_http_url(url):
            logger.debug("rss_entry_skipped", source_id=self.id, reason="invalid_url", url=link)
            return None

        published = _entry_published(entry) or utc_now()
        display_name = self.config.display_name
        return build_item(
            source_id=self.id,
            source=display_name or self.id,
            title=title,
            url=url,
            published_at=published,
            summary=_entry_summary(entry) or None,
            authors=_entry_authors(entry) or None,
            metadata=self.runtime.item_metadata(source_display_name=display_name),
        )
