# timeline_ingest/core/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from timeline_ingest.core.errors import ConfigurationError

ENV_FILE = Path.cwd() / ".env"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- App ----
    APP_VERSION: str = "0.3.0"
    LOG_LEVEL: str = "info"

    # ---- Config files ----
    CONFIG_ROOT: Path = Field(default_factory=lambda: Path.cwd() / "configs")
    SOURCES_FILE: str = "sources.yml"
    PIPELINE_FILE: str = "pipeline.yml"

    # ---- HTTP ----
    HTTP_USER_AGENT: str = "timeline-ingest/0.3 (+https://github.com/timeline-ingest)"

    # ---- Run behaviour ----
    DRY_RUN: bool = False
    # Passed through to the external analyzer; this package does not score.
    SIGNIFICANCE_THRESHOLD: float = 7.0
    MAX_EVENTS_PER_RUN: int = 3
    # Optional override of pipeline.yml limits.max_items_per_run
    MAX_ITEMS_PER_RUN: Optional[int] = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def sources_path(self) -> Path:
        return Path(self.CONFIG_ROOT) / self.SOURCES_FILE

    @property
    def pipeline_path(self) -> Path:
        return Path(self.CONFIG_ROOT) / self.PIPELINE_FILE


settings = Settings()


def read_yaml_config(path: Path) -> Dict[str, Any]:
    """
    Read one YAML mapping from disk.

    Unlike the best-effort feed registries, a run cannot proceed on a broken
    config file, so every failure surfaces as ConfigurationError.
    """
    cfg_path = Path(path)
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError("config file not found", path=str(cfg_path)) from None
    except OSError as exc:
        raise ConfigurationError(f"config file unreadable: {exc}", path=str(cfg_path)) from exc

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML: {exc}", path=str(cfg_path)) from exc

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"root must be a mapping, got {type(data).__name__}", path=str(cfg_path)
        )
    return data
