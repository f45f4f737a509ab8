from __future__ import annotations

import json

import pytest

from timeline_ingest.models.sources import clear_config_cache
from timeline_ingest.workers import ingest_bot
from tests.fixtures import FakeConnector, make_item

SOURCES_YML = """
window_days: 2
sources:
  - id: feed
    url: https://example.com/rss
"""

PIPELINE_YML = """
limits:
  max_items_per_run: 50
retries:
  policy: none
"""


@pytest.fixture
def config_files(tmp_path):
    clear_config_cache()
    sources = tmp_path / "sources.yml"
    pipeline = tmp_path / "pipeline.yml"
    sources.write_text(SOURCES_YML, encoding="utf-8")
    pipeline.write_text(PIPELINE_YML, encoding="utf-8")
    yield sources, pipeline
    clear_config_cache()


def test_parse_args_validates_numbers() -> None:
    args = ingest_bot.parse_args(["--window-days", "0", "--max-items", "5", "--dry-run"])
    assert args.window_days == 0
    assert args.max_items == 5
    assert args.dry_run is True

    with pytest.raises(SystemExit):
        ingest_bot.parse_args(["--max-items", "0"])
    with pytest.raises(SystemExit):
        ingest_bot.parse_args(["--window-days", "-1"])


@pytest.mark.asyncio
async def test_main_writes_batch_and_succeeds(config_files, tmp_path, monkeypatch, capsys) -> None:
    sources, pipeline = config_files
    items = [
        make_item(title="Robotics benchmark", url="https://robots.example/bench", source="feed"),
        make_item(title="Quarterly earnings call", url="https://finance.example/q4", source="feed", hours_ago=2),
    ]
    seen = {}

    def fake_build(sources_file, *, pipeline=None, user_agent=None):
        seen["max_items_per_run"] = pipeline.limits.max_items_per_run
        return [FakeConnector("feed", items=items)]

    monkeypatch.setattr(ingest_bot, "build_connectors", fake_build)
    output = tmp_path / "out" / "batch.json"

    exit_code = await ingest_bot.main_async(
        ["--sources", str(sources), "--pipeline", str(pipeline), "--max-items", "10", "--output", str(output)]
    )

    assert exit_code == 0
    assert seen["max_items_per_run"] == 10
    written = json.loads(output.read_text(encoding="utf-8"))
    assert [entry["title"] for entry in written] == ["Robotics benchmark", "Quarterly earnings call"]
    assert "publishedAt" in written[0]

    summary = json.loads(capsys.readouterr().out)
    assert summary["success"] is True
    assert summary["after_deduplication"] == 2


@pytest.mark.asyncio
async def test_main_returns_failure_when_all_connectors_fail(config_files, monkeypatch) -> None:
    sources, pipeline = config_files
    monkeypatch.setattr(
        ingest_bot,
        "build_connectors",
        lambda sources_file, **_: [FakeConnector("feed", error=RuntimeError("down"))],
    )

    exit_code = await ingest_bot.main_async(["--sources", str(sources), "--pipeline", str(pipeline)])

    assert exit_code == 1


@pytest.mark.asyncio
async def test_main_returns_failure_on_config_error(tmp_path) -> None:
    clear_config_cache()

    exit_code = await ingest_bot.main_async(["--sources", str(tmp_path / "missing.yml")])

    assert exit_code == 1
