from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone

import pytest

from timeline_ingest.models.items import FetchOptions
from timeline_ingest.services.item_normalization import (
    apply_fetch_window,
    build_item,
    canonicalize_url,
    dedupe_by_id,
    is_http_url,
    make_item_id,
    normalize_whitespace,
    parse_published_at,
    split_author_names,
    strip_html,
    url_domain,
)
from tests.fixtures import BASE_TIME, make_item, make_options


def test_canonicalize_url_strips_tracking_and_fragment() -> None:
    url = "https://Example.COM/post?id=3&utm_source=rss&utm_medium=feed&fbclid=abc#comments"
    assert canonicalize_url(url) == "https://example.com/post?id=3"


def test_canonicalize_url_empty_path_and_relative_base() -> None:
    assert canonicalize_url("https://www.example.com?utm_campaign=x") == "https://www.example.com/"
    assert canonicalize_url("/blog/a#top", base="https://example.com/news/") == "https://example.com/blog/a"


def test_canonicalize_url_leaves_non_http_untouched() -> None:
    assert canonicalize_url("  mailto:someone@example.com ") == "mailto:someone@example.com"


def test_canonicalize_url_tolerates_malformed_input() -> None:
    assert canonicalize_url("http://[::1", base="https://example.com/") == "http://[::1"
    assert canonicalize_url(" http://[x/post ") == "http://[x/post"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com/a", True),
        ("HTTP://example.com", True),
        ("http://[::1", False),
        ("http://example.com:port/", False),
        ("/relative/path", False),
        ("mailto:someone@example.com", False),
        ("", False),
    ],
)
def test_is_http_url(url, expected) -> None:
    assert is_http_url(url) is expected


def test_url_domain_drops_www() -> None:
    assert url_domain("https://www.openai.com/blog") == "openai.com"
    assert url_domain("not a url") == ""


def test_make_item_id_is_deterministic() -> None:
    published = datetime(2025, 1, 10, 23, 30, tzinfo=timezone.utc)
    first = make_item_id("openai_blog", "https://openai.com/blog/gpt-5", published)
    second = make_item_id("openai_blog", "https://openai.com/blog/gpt-5", published)
    other_source = make_item_id("techcrunch", "https://openai.com/blog/gpt-5", published)

    assert first == second
    assert first != other_source
    assert re.fullmatch(r"2025-01-10-openai_blog-[0-9a-f]{6}", first)


def test_make_item_id_uses_utc_date() -> None:
    amsterdam_morning = datetime(2025, 1, 11, 0, 30, tzinfo=timezone(timedelta(hours=1)))
    assert make_item_id("src", "https://a.example/x", amsterdam_morning).startswith("2025-01-10-")


def test_build_item_same_link_with_tracking_yields_same_id() -> None:
    a = build_item(source_id="s", title="T", url="https://a.example/x?utm_source=1", published_at=BASE_TIME)
    b = build_item(source_id="s", title="T", url="https://a.example/x#frag", published_at=BASE_TIME)
    assert a.id == b.id
    assert a.url == "https://a.example/x"


def test_build_item_cleans_title_and_summary() -> None:
    item = build_item(
        source_id="s",
        title="  Spaced \n  title ",
        url="https://a.example/x",
        published_at=BASE_TIME,
        summary="<p>Hello&nbsp;<b>world</b></p>",
    )
    assert item.title == "Spaced title"
    assert item.summary == "Hello world"
    assert item.source == "s"


def test_strip_html_and_whitespace() -> None:
    assert strip_html("<div>a &amp; b</div>") == "a & b"
    assert strip_html(None) == ""
    assert normalize_whitespace("  a\t\tb \n") == "a b"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("John Doe, Alex Roe and Sam Poe", ["John Doe", "Alex Roe", "Sam Poe"]),
        (["Ada", " Ada ", "Alan"], ["Ada", "Alan"]),
        ([{"name": "Dr. Ada Lovelace"}, {"name": "Dr. Alan Turing"}], ["Dr. Ada Lovelace", "Dr. Alan Turing"]),
        ({"name": "Grace Hopper"}, ["Grace Hopper"]),
        ("Alexander Anderson", ["Alexander Anderson"]),
        (None, []),
        (42, []),
    ],
)
def test_split_author_names(value, expected) -> None:
    assert split_author_names(value) == expected


def test_parse_published_at_variants() -> None:
    naive = parse_published_at("2025-01-10 12:00:00")
    assert naive == datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)

    offset = parse_published_at("2025-01-10T13:00:00+01:00")
    assert offset == datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)

    struct = parse_published_at(time.gmtime(0))
    assert struct == datetime(1970, 1, 1, tzinfo=timezone.utc)

    assert parse_published_at(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_published_at("definitely not a date") is None
    assert parse_published_at("") is None
    assert parse_published_at(None) is None
    assert parse_published_at(True) is None


def test_fetch_options_rejects_inverted_window() -> None:
    with pytest.raises(ValueError):
        FetchOptions(window_start=BASE_TIME, window_end=BASE_TIME - timedelta(seconds=1))


def test_fetch_options_to_dict() -> None:
    options = make_options(max_items=5)
    data = options.to_dict()
    assert data["maxItems"] == 5
    assert data["correlationId"] == "test-run"
    assert data["windowStart"].startswith("2025-01-08")


def test_apply_fetch_window_excludes_items_outside_bounds() -> None:
    start = BASE_TIME - timedelta(days=1)
    end = BASE_TIME
    options = FetchOptions(window_start=start, window_end=end)

    before = make_item(title="before", url="https://a.example/1", published_at=start - timedelta(seconds=1))
    at_start = make_item(title="at start", url="https://a.example/2", published_at=start)
    inside = make_item(title="inside", url="https://a.example/3", hours_ago=5)
    at_end = make_item(title="at end", url="https://a.example/4", published_at=end)
    after = make_item(title="after", url="https://a.example/5", published_at=end + timedelta(seconds=1))

    kept = apply_fetch_window([before, at_start, inside, at_end, after], options)

    assert [i.title for i in kept] == ["at start", "inside", "at end"]


def test_apply_fetch_window_truncates_to_max_items() -> None:
    items = [make_item(title=f"item {n}", url=f"https://a.example/{n}", hours_ago=n) for n in range(5)]
    kept = apply_fetch_window(items, make_options(max_items=2))
    assert [i.title for i in kept] == ["item 0", "item 1"]


def test_dedupe_by_id_keeps_first() -> None:
    first = make_item(title="first")
    again = make_item(title="second copy")
    assert first.id == again.id
    assert dedupe_by_id([first, again]) == [first]


def test_payload_uses_camel_case_published_at() -> None:
    item = make_item(authors=["Ada"])
    payload = item.to_payload()
    assert payload["publishedAt"] == "2025-01-10T12:00:00Z"
    assert payload["source"] == "test_source"
    assert "summary" not in payload
