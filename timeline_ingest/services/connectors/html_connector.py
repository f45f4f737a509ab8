from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from selectolax.parser import HTMLParser, Node

from timeline_ingest.core.logging import get_logger
from timeline_ingest.models.items import FetchOptions, NormalizedItem
from timeline_ingest.models.sources import HtmlSourceConfig
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

JSON_LD_SCRIPT = "script[type='application/ld+json']"
AUTHOR_SELECTOR = "[itemprop='author'], .author"


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, list):
        for entry in value:
            candidate = _stringify(entry)
            if candidate:
                return candidate
        return None
    if isinstance(value, dict):
        for key in ("@id", "url", "name"):
            if key in value:
                return _stringify(value[key])
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _iter_json_ld_nodes(payload: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(payload, list):
        for entry in payload:
            yield from _iter_json_ld_nodes(entry)
    elif isinstance(payload, dict):
        graph = payload.get("@graph")
        if isinstance(graph, list):
            yield from _iter_json_ld_nodes(graph)
        yield payload


def _type_matches(node: Dict[str, Any], expected: List[str]) -> bool:
    raw_type = node.get("@type")
    if raw_type is None:
        return False
    wanted = {t.strip().lower() for t in expected}
    if isinstance(raw_type, list):
        return any(str(entry).strip().lower() in wanted for entry in raw_type)
    return str(raw_type).strip().lower() in wanted


def _node_text(node: Optional[Node]) -> str:
    if node is None:
        return ""
    return normalize_whitespace(node.text(separator=" "))


class StructuredHtmlConnector:
    """
    HTML page connector.

    Embedded JSON-LD is read first. The ``article`` markup heuristic runs when
    JSON-LD yields nothing (or always, with ``always_scan_markup``); both paths
    may rediscover the same entry, so results are deduplicated by id.
    """

    kind = "html"

    def __init__(self, config: HtmlSourceConfig, runtime: ConnectorRuntime) -> None:
        self.config = config
        self.runtime = runtime
        self.id = config.id

    async def fetch(self, options: FetchOptions) -> List[NormalizedItem]:
        try:
            async with self.runtime.http_fetcher() as http:
                html_text = await http.fetch_text(self.config.url, cancel_event=options.cancel_event)
            items = self.parse(html_text)
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as exc:
            raise fetch_error(self.id, exc) from exc

        result = apply_fetch_window(items, options)
        logger.info(
            "html_source_fetched",
            source_id=self.id,
            extracted=len(items),
            in_window=len(result),
        )
        return result

    def parse(self, html_text: str) -> List[NormalizedItem]:
        parser = HTMLParser(html_text)
        items = self._parse_json_ld(parser)
        if not items or self.config.always_scan_markup:
            items.extend(self._parse_markup(parser))
        return dedupe_by_id(items)

    def _parse_json_ld(self, parser: HTMLParser) -> List[NormalizedItem]:
        items: List[NormalizedItem] = []
        for script in parser.css(JSON_LD_SCRIPT):
            script_text = (script.text() or "").strip()
            if not script_text:
                continue
            try:
                payload = json.loads(script_text)
            except ValueError:
                logger.debug("json_ld_block_skipped", source_id=self.id, reason="invalid_json")
                continue

            for node in _iter_json_ld_nodes(payload):
                if not _type_matches(node, self.config.json_ld_types):
                    continue
                try:
                    item = self._item_from_json_ld(node)
                except Exception as exc:
                    logger.debug(
                        "json_ld_node_skipped",
                        source_id=self.id,
                        reason="normalization_error",
                        error=str(exc),
                    )
                    continue
                if item is not None:
                    items.append(item)
        return items

    def _item_from_json_ld(self, node: Dict[str, Any]) -> Optional[NormalizedItem]:
        title = _stringify(node.get("headline")) or _stringify(node.get("name"))
        url = _stringify(node.get("url")) or _stringify(node.get("mainEntityOfPage"))
        if not title or not url:
            logger.debug("json_ld_node_skipped", source_id=self.id, reason="missing_title_or_url")
            return None

        canonical = canonicalize_url(url, base=self.config.url)
        if not is_http_url(canonical):
            logger.debug("json_ld_node_skipped", source_id=self.id, reason="invalid_url", url=url)
            return None

        published = self._published_or_now(
            _stringify(node.get("datePublished")) or _stringify(node.get("dateCreated"))
        )
        authors = split_author_names(node.get("author")) or split_author_names(node.get("creator"))
        return build_item(
            source_id=self.id,
            title=title,
            url=canonical,
            published_at=published,
            summary=_stringify(node.get("description")),
            authors=authors or None,
            metadata=self.runtime.item_metadata(extraction="json_ld"),
        )

    def _parse_markup(self, parser: HTMLParser) -> List[NormalizedItem]:
        items: List[NormalizedItem] = []
        for article in parser.css(self.config.article_selector):
            try:
                item = self._item_from_article(article)
            except Exception as exc:
                logger.debug(
                    "markup_article_skipped",
                    source_id=self.id,
                    reason="normalization_error",
                    error=str(exc),
                )
                continue
            if item is not None:
                items.append(item)
        return items

    def _item_from_article(self, article: Node) -> Optional[NormalizedItem]:
        link = article.css_first("a[href]")
        href = (link.attributes.get("href") or "").strip() if link is not None else ""
        title = _node_text(article.css_first("h1, h2, h3")) or _node_text(link)
        if not href or not title:
            logger.debug("markup_article_skipped", source_id=self.id, reason="missing_title_or_link")
            return None

        url = canonicalize_url(href, base=self.config.url)
        if not is_http_url(url):
            logger.debug("markup_article_skipped", source_id=self.id, reason="invalid_url", url=href)
            return None

        time_node = article.css_first("time")
        raw_date = None
        if time_node is not None:
            raw_date = (time_node.attributes.get("datetime") or "").strip() or _node_text(time_node)

        return build_item(
            source_id=self.id,
            title=title,
            url=url,
            published_at=self._published_or_now(raw_date),
            summary=_node_text(article.css_first("p")) or None,
            authors=split_author_names(_node_text(article.css_first(AUTHOR_SELECTOR))) or None,
            metadata=self.runtime.item_metadata(extraction="markup"),
        )

    def _published_or_now(self, raw: Optional[str]):
        published = parse_published_at(raw)
        if published is None:
            if raw:
                logger.warning("html_date_unparsable", source_id=self.id, value=raw)
            return utc_now()
        return published
