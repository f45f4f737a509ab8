"""
Shared helpers every connector uses to turn raw records into NormalizedItem.

Plain functions, no connector state: URL canonicalization, id hashing,
text cleanup, date parsing, author splitting, and the common window/limit
step applied before a connector returns.
"""

from __future__ import annotations

import calendar
import hashlib
import re
import time
from datetime import datetime, timezone
from html import unescape
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from dateutil import parser as date_parser

from timeline_ingest.models.items import FetchOptions, NormalizedItem

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_AUTHOR_SPLIT_RE = re.compile(r",|\band\b", re.IGNORECASE)

TRACKING_PARAMS = frozenset({"gclid", "fbclid", "mc_cid", "mc_eid", "igshid"})
ID_HASH_LENGTH = 6


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def canonicalize_url(url: str, base: Optional[str] = None) -> str:
    """
    Strip tracking parameters and the fragment; lowercase scheme and host.

    Relative links are resolved against ``base`` first. Anything that does
    not parse as an absolute http(s) URL is returned trimmed but otherwise
    untouched.
    """
    raw = (url or "").strip()
    try:
        if base:
            raw = urljoin(base, raw)
        parts = urlsplit(raw)
    except ValueError:
        return raw
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return raw

    query_pairs = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking_param(k)
    ]
    return urlunsplit(
        (
            parts.scheme.lower(),
            parts.netloc.lower(),
            parts.path or "/",
            urlencode(query_pairs),
            "",
        )
    )


def is_http_url(url: str) -> bool:
    """True for an absolute http(s) URL with a host and a valid port."""
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError:
        return False
    return parts.scheme.lower() in ("http", "https") and bool(parts.hostname)


def url_domain(url: str) -> str:
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def make_item_id(source_id: str, url: str, published_at: datetime) -> str:
    digest = hashlib.sha1(f"{source_id}:{url}".encode("utf-8")).hexdigest()[:ID_HASH_LENGTH]
    day = ensure_utc(published_at).date().isoformat()
    return f"{day}-{source_id}-{digest}"


def normalize_whitespace(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip()


def strip_html(value: Optional[str]) -> str:
    text = unescape(value or "")
    text = _HTML_TAG_RE.sub(" ", text)
    return normalize_whitespace(text)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_published_at(value: Any) -> Optional[datetime]:
    """
    Lenient timestamp parsing: datetimes, feedparser struct_time values,
    epoch seconds and free-form strings. Naive values are taken as UTC.
    Returns None when nothing usable is found.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, time.struct_time):
        try:
            return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
        except (OverflowError, ValueError):
            return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return ensure_utc(date_parser.parse(value.strip()))
        except (ValueError, OverflowError, date_parser.ParserError):
            return None
    return None


def split_author_names(value: Any) -> List[str]:
    """
    Accepts ``"A, B and C"``, ``["A", "B"]``, ``[{"name": "A"}]`` or
    ``{"name": "A"}``; returns distinct non-empty names in order.
    """
    raw: List[str] = []
    if isinstance(value, str):
        raw = _AUTHOR_SPLIT_RE.split(value)
    elif isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str):
            raw = [name]
    elif isinstance(value, (list, tuple)):
        for entry in value:
            if isinstance(entry, str):
                raw.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
                raw.append(entry["name"])

    names: List[str] = []
    for name in raw:
        cleaned = normalize_whitespace(name)
        if cleaned and cleaned not in names:
            names.append(cleaned)
    return names


def build_item(
    *,
    source_id: str,
    title: str,
    url: str,
    published_at: datetime,
    summary: Optional[str] = None,
    authors: Optional[Sequence[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    source: Optional[str] = None,
) -> NormalizedItem:
    canonical = canonicalize_url(url)
    published = ensure_utc(published_at)
    clean_summary = strip_html(summary) if summary else ""
    return NormalizedItem(
        id=make_item_id(source_id, canonical, published),
        title=normalize_whitespace(title),
        url=canonical,
        published_at=published,
        source=source or source_id,
        summary=clean_summary or None,
        authors=list(authors) if authors else None,
        metadata=dict(metadata or {}),
    )


def dedupe_by_id(items: Iterable[NormalizedItem]) -> List[NormalizedItem]:
    seen = set()
    unique: List[NormalizedItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


def apply_fetch_window(items: Iterable[NormalizedItem], options: FetchOptions) -> List[NormalizedItem]:
    """Keep items inside ``[window_start, window_end]``, then truncate to ``max_items``."""
    kept = [item for item in items if options.contains(item.published_at)]
    if options.max_items is not None:
        kept = kept[: options.max_items]
    return kept
