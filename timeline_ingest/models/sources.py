"""
Source registry loader.

Parses configs/sources.yml into one validated config object per source,
selected by the ``kind`` discriminator. Entries without a ``kind`` are
treated as RSS feeds.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from timeline_ingest.core.config import read_yaml_config, settings
from timeline_ingest.core.errors import ConfigurationError
from timeline_ingest.core.logging import get_logger
from timeline_ingest.models.pipeline import _load_pipeline_cached

logger = get_logger()

SOURCE_KINDS = ("rss", "api", "html", "custom")
DEFAULT_JSON_LD_TYPES = ("BlogPosting", "Article", "NewsArticle")


class SourceDefaults(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rate_limit_qpm: Optional[int] = Field(default=None, ge=1)
    timeout_ms: Optional[int] = Field(default=None, ge=1)


class _SourceBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    url: str
    enabled: bool = True
    rate_limit_qpm: Optional[int] = Field(default=None, ge=1)
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("id cannot be empty")
        return trimmed

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed.lower().startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return trimmed

    @property
    def tier(self) -> Optional[str]:
        value = self.metadata.get("tier")
        return str(value).strip().lower() if value else None

    @property
    def retry_policy(self) -> Optional[str]:
        value = self.metadata.get("retry_policy")
        return str(value).strip() if value else None


class RssSourceConfig(_SourceBase):
    kind: Literal["rss"] = "rss"
    display_name: Optional[str] = None


class ApiSourceConfig(_SourceBase):
    kind: Literal["api"] = "api"
    # Dotted path to the record list inside an envelope; None = auto-detect.
    items_path: Optional[str] = None
    next_path: str = "next"
    max_pages: int = Field(default=50, ge=1)


class HtmlSourceConfig(_SourceBase):
    kind: Literal["html"] = "html"
    json_ld_types: List[str] = Field(default_factory=lambda: list(DEFAULT_JSON_LD_TYPES))
    article_selector: str = "article"
    always_scan_markup: bool = False


class CustomSourceConfig(_SourceBase):
    kind: Literal["custom"] = "custom"


SourceConfig = Annotated[
    Union[RssSourceConfig, ApiSourceConfig, HtmlSourceConfig, CustomSourceConfig],
    Field(discriminator="kind"),
]


class SourcesFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    window_days: int = Field(default=3, ge=0)
    defaults: SourceDefaults = Field(default_factory=SourceDefaults)
    sources: List[SourceConfig] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _default_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_sources = data.get("sources") or []
        if not isinstance(raw_sources, list):
            return data
        patched = []
        for entry in raw_sources:
            if isinstance(entry, dict):
                entry = dict(entry)
                kind = str(entry.get("kind") or "rss").strip().lower()
                entry["kind"] = kind
            patched.append(entry)
        return {**data, "sources": patched}

    @model_validator(mode="after")
    def _unique_ids(self) -> "SourcesFile":
        seen = set()
        for source in self.sources:
            if source.id in seen:
                raise ValueError(f"duplicate source id: {source.id}")
            seen.add(source.id)
        return self

    @property
    def enabled_sources(self) -> List[SourceConfig]:
        return [s for s in self.sources if s.enabled]


@lru_cache(maxsize=8)
def _load_sources_cached(resolved_path: str) -> SourcesFile:
    data = read_yaml_config(Path(resolved_path))
    try:
        parsed = SourcesFile.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid sources config: {exc}", path=resolved_path) from exc
    logger.info(
        "sources_config_loaded",
        path=resolved_path,
        total=len(parsed.sources),
        enabled=len(parsed.enabled_sources),
    )
    return parsed


def load_sources_config(path: Optional[Union[str, Path]] = None) -> SourcesFile:
    cfg_path = Path(path) if path else settings.sources_path
    return _load_sources_cached(str(cfg_path.resolve()))


def clear_config_cache() -> None:
    _load_sources_cached.cache_clear()
    _load_pipeline_cached.cache_clear()
