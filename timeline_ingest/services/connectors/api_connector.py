from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from timeline_ingest.core.logging import get_logger
from timeline_ingest.models.items import FetchOptions, NormalizedItem
from timeline_ingest.models.sources import ApiSourceConfig
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
)

logger = get_logger()

TITLE_KEYS = ("title", "paper_title", "name")
URL_KEYS = ("url_abs", "url", "paper_url", "repository_url", "link")
DATE_KEYS = ("published_at", "published", "created_at", "date")
SUMMARY_KEYS = ("summary", "description", "paper_abstract", "abstract")
AUTHOR_KEYS = ("author_names", "authors")
ENVELOPE_KEYS = ("results", "items", "data")


def _first_str(record: Dict[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _dig(payload: Any, dotted_path: str) -> Any:
    current = payload
    for part in dotted_path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class PaginatedApiConnector:
    """
    JSON API connector following ``next`` links.

    Accepts a bare array of records or an envelope like ``{results, next}``.
    Pagination stops when the cursor runs out, ``max_items`` in-window items
    were collected, or ``max_pages`` pages were read.
    """

    kind = "api"

    def __init__(self, config: ApiSourceConfig, runtime: ConnectorRuntime) -> None:
        self.config = config
        self.runtime = runtime
        self.id = config.id

    async def fetch(self, options: FetchOptions) -> List[NormalizedItem]:
        items: List[NormalizedItem] = []
        in_window = 0
        pages = 0
        visited = set()
        next_url: Optional[str] = self.config.url

        try:
            async with self.runtime.http_fetcher() as http:
                while next_url and pages < self.config.max_pages:
                    if next_url in visited:
                        logger.warning("api_pagination_cycle", source_id=self.id, url=next_url)
                        break
                    visited.add(next_url)
                    page_url = next_url
                    payload = await http.fetch_json(page_url, cancel_event=options.cancel_event)
                    pages += 1

                    records, cursor = self._unpack(payload)
                    for record in records:
                        try:
                            item = self._normalize_record(record, base_url=page_url)
                        except Exception as exc:
                            logger.debug(
                                "api_record_skipped",
                                source_id=self.id,
                                reason="normalization_error",
                                error=str(exc),
                            )
                            continue
                        if item is None:
                            continue
                        items.append(item)
                        if options.contains(item.published_at):
                            in_window += 1

                    if options.max_items is not None and in_window >= options.max_items:
                        break
                    next_url = urljoin(page_url, cursor) if cursor else None
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as exc:
            raise fetch_error(self.id, exc) from exc

        result = apply_fetch_window(dedupe_by_id(items), options)
        logger.info(
            "api_source_fetched",
            source_id=self.id,
            pages=pages,
            normalized=len(items),
            in_window=len(result),
        )
        return result

    def _unpack(self, payload: Any) -> Tuple[List[Any], Optional[str]]:
        if isinstance(payload, list):
            return payload, None
        if not isinstance(payload, dict):
            logger.warning("api_payload_unexpected", source_id=self.id, payload_type=type(payload).__name__)
            return [], None

        if self.config.items_path:
            records = _dig(payload, self.config.items_path)
        else:
            records = next(
                (payload[k] for k in ENVELOPE_KEYS if isinstance(payload.get(k), list)),
                None,
            )
        if not isinstance(records, list):
            logger.warning("api_payload_missing_records", source_id=self.id, items_path=self.config.items_path)
            records = []

        cursor = _dig(payload, self.config.next_path)
        return records, cursor if isinstance(cursor, str) and cursor.strip() else None

    def _normalize_record(self, record: Any, *, base_url: str) -> Optional[NormalizedItem]:
        if not isinstance(record, dict):
            logger.debug("api_record_skipped", source_id=self.id, reason="not_an_object")
            return None
        title = normalize_whitespace(_first_str(record, TITLE_KEYS))
        raw_url = _first_str(record, URL_KEYS)
        if not title or not raw_url:
            logger.debug("api_record_skipped", source_id=self.id, reason="missing_title_or_url")
            return None

        url = canonicalize_url(raw_url, base=base_url)
        if not is_http_url(url):
            logger.debug("api_record_skipped", source_id=self.id, reason="invalid_url", url=raw_url)
            return None

        published = None
        for key in DATE_KEYS:
            published = parse_published_at(record.get(key))
            if published is not None:
                break

        authors: List[str] = []
        for key in AUTHOR_KEYS:
            authors = split_author_names(record.get(key))
            if authors:
                break

        repository_url = record.get("repository_url")
        return build_item(
            source_id=self.id,
            title=title,
            url=url,
            published_at=published or utc_now(),
            summary=_first_str(record, SUMMARY_KEYS) or None,
            authors=authors or None,
            metadata=self.runtime.item_metadata(
                repository_url=repository_url if isinstance(repository_url, str) else None,
            ),
        )
