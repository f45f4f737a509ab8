from __future__ import annotations

from datetime import timedelta

import pytest

from timeline_ingest.models.pipeline import DedupeSettings
from timeline_ingest.services.dedupe_service import (
    DedupeConfig,
    DeduplicationService,
    deduplication_stats,
    extract_key_terms,
    text_similarity,
)
from tests.fixtures import make_item

SHARED_SUMMARY = "OpenAI has released GPT-5, its most capable model so far."


def _official_post(**overrides):
    base = dict(
        title="OpenAI releases GPT-5",
        url="https://openai.com/blog/gpt-5",
        source="OpenAI Blog",
        hours_ago=2,
        summary=SHARED_SUMMARY,
    )
    base.update(overrides)
    return make_item(**base)


def _press_post(**overrides):
    base = dict(
        title="OpenAI releases GPT-5 model",
        url="https://techcrunch.com/2025/01/10/openai-gpt-5/",
        source="TechCrunch",
        hours_ago=0,
        summary=SHARED_SUMMARY,
    )
    base.update(overrides)
    return make_item(**base)


@pytest.mark.parametrize("order", ["official_first", "press_first"])
def test_cross_source_duplicates_merge_into_official_item(order) -> None:
    official, press = _official_post(), _press_post()
    items = [official, press] if order == "official_first" else [press, official]

    result = DeduplicationService().deduplicate(items)

    assert len(result) == 1
    merged = result[0]
    assert merged.source == "OpenAI Blog"
    assert merged.url == "https://openai.com/blog/gpt-5"
    assert merged.metadata["duplicate_count"] == 2
    assert set(merged.metadata["sources"]) == {"OpenAI Blog", "TechCrunch"}
    assert set(merged.metadata["all_urls"]) == {official.url, press.url}


def test_shared_url_with_reworded_title_prefers_official_source() -> None:
    press = make_item(title="GPT-5 Released by OpenAI", url="https://openai.com/blog/gpt-5", source="TechCrunch")
    official = make_item(title="OpenAI Announces GPT-5", url="https://openai.com/blog/gpt-5", source="OpenAI Blog")

    result = DeduplicationService().deduplicate([press, official])

    assert len(result) == 1
    assert result[0].metadata["duplicate_count"] == 2
    assert result[0].source == "OpenAI Blog"
    assert result[0].title == "OpenAI Announces GPT-5"


def test_same_story_days_apart_is_kept() -> None:
    items = [_official_post(hours_ago=0), _press_post(hours_ago=120)]

    result = DeduplicationService().deduplicate(items)

    assert len(result) == 2


def test_identical_url_merges_regardless_of_time_and_title() -> None:
    first = make_item(title="Launch day", url="https://example.com/a", source="feed_one", hours_ago=0)
    second = make_item(title="Completely different", url="https://example.com/a", source="feed_two", hours_ago=200)

    service = DeduplicationService()
    assert service.similarity(first, second) == 1.0
    assert len(service.deduplicate([first, second])) == 1


def test_unrelated_items_are_untouched() -> None:
    lone = make_item(title="Robotics benchmark", url="https://example.com/robots")
    other = make_item(title="Quarterly earnings call", url="https://another.example/earnings", hours_ago=1)

    result = DeduplicationService().deduplicate([lone, other])

    assert result[0] is lone
    assert "duplicate_count" not in result[0].metadata
    assert [i.id for i in result] == [lone.id, other.id]


def test_deduplicate_is_idempotent() -> None:
    items = [
        _press_post(),
        _official_post(),
        make_item(title="Robotics benchmark", url="https://example.com/robots"),
    ]
    service = DeduplicationService()

    once = service.deduplicate(items)
    twice = service.deduplicate(once)

    assert [i.id for i in twice] == [i.id for i in once]
    assert twice[0].metadata["duplicate_count"] == 2


def test_merge_keeps_longest_summary_and_fills_authors() -> None:
    official = _official_post(summary="GPT-5 is here.")
    press = _press_post(
        summary="GPT-5 is here. It brings better reasoning and a longer context window.",
        authors=["Kyle Wiggers"],
    )

    merged = DeduplicationService().deduplicate([official, press])[0]

    assert merged.source == "OpenAI Blog"
    assert merged.summary == press.summary
    assert merged.authors == ["Kyle Wiggers"]


def test_metadata_tier_overrides_builtin_table() -> None:
    press = _press_post()
    lab = _official_post(source="Frontier Lab", metadata={"tier": "official"})
    service = DeduplicationService()

    assert service.source_rank(lab) == 4
    assert service.source_rank(press) == 2
    assert service.source_rank(make_item(source="someone")) == 0

    merged = service.deduplicate([press, lab])[0]
    assert merged.source == "Frontier Lab"
    assert merged.metadata["tier"] == "official"


def test_equal_rank_keeps_first_seed_as_primary() -> None:
    first = _press_post(source="The Verge", url="https://theverge.com/gpt-5")
    second = _press_post()

    groups = DeduplicationService().find_duplicate_groups([first, second])

    assert len(groups) == 1
    assert groups[0].primary is first
    assert groups[0].size == 2
    assert second.id in groups[0].pairwise_scores


def test_text_similarity_signals() -> None:
    config = DedupeConfig()

    assert text_similarity("GPT-5!", "gpt 5", config) == 1.0
    assert text_similarity("big cat", "the big cat nap", config) == pytest.approx(0.9)
    assert text_similarity("GPT-5 Released", "OpenAI Releases GPT-5", config) == pytest.approx(2 / 3)
    assert extract_key_terms("OpenAI ships GPT-5 to EU users") == {"openai", "ships", "gpt", "5", "eu", "users"}


def test_zero_time_window_blocks_everything_but_url_matches() -> None:
    service = DeduplicationService(DedupeConfig(time_window=timedelta(0)))

    assert service.similarity(_official_post(), _press_post()) == 0.0


def test_stats_and_settings() -> None:
    items = [_official_post(), _press_post(), make_item(title="Robotics benchmark", url="https://example.com/robots")]
    result = DeduplicationService().deduplicate(items)

    stats = deduplication_stats(items, result)
    assert stats["original_count"] == 3
    assert stats["deduplicated_count"] == 2
    assert stats["duplicates_removed"] == 1
    assert stats["deduplication_rate"] == pytest.approx(1 / 3)
    assert deduplication_stats([], [])["deduplication_rate"] == 0.0

    config = DedupeConfig.from_settings(
        DedupeSettings.model_validate({"embed_similarity_min": 0.75, "time_window_hours": 24})
    )
    assert config.similarity_threshold == 0.75
    assert config.time_window == timedelta(hours=24)
