"""
Pipeline-level limits and tuning, parsed from configs/pipeline.yml.

Every section is optional; a missing file section falls back to the
defaults below.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from timeline_ingest.core.circuit_breaker import CircuitBreakerConfig
from timeline_ingest.core.config import read_yaml_config, settings
from timeline_ingest.core.errors import ConfigurationError
from timeline_ingest.core.logging import get_logger
from timeline_ingest.core.retry import RetryConfig, RetryPolicyRegistry

logger = get_logger()


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LimitsConfig(_Section):
    max_items_per_run: Optional[int] = Field(default=None, ge=1)
    max_items_per_source: int = Field(default=20, ge=1)


class DedupeWeights(_Section):
    title: float = Field(default=0.5, ge=0)
    content: float = Field(default=0.3, ge=0)
    domain: float = Field(default=0.1, ge=0)
    time: float = Field(default=0.1, ge=0)


class DedupeSettings(_Section):
    similarity_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("similarity_threshold", "embed_similarity_min"),
    )
    time_window_hours: float = Field(default=48.0, gt=0)
    use_fuzzy_matching: bool = True
    weights: DedupeWeights = Field(default_factory=DedupeWeights)


class TimeoutsConfig(_Section):
    connector_ms: int = Field(default=15000, ge=1)


class RetriesConfig(_Section):
    policy: str = "standard"
    attempts: Optional[int] = Field(default=None, ge=1)
    base_ms: Optional[int] = Field(default=None, ge=0)
    max_ms: Optional[int] = Field(default=None, ge=0)

    def resolve(self, registry: RetryPolicyRegistry, policy: Optional[str] = None) -> RetryConfig:
        """Named policy with the numeric overrides of this section applied."""
        base = registry.get(policy or self.policy)
        return base.with_overrides(
            max_attempts=self.attempts,
            initial_delay=self.base_ms / 1000.0 if self.base_ms is not None else None,
            max_delay=self.max_ms / 1000.0 if self.max_ms is not None else None,
        )


class CircuitBreakerSettings(_Section):
    failure_threshold: int = Field(default=3, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    timeout_ms: int = Field(default=60000, ge=0)
    window_ms: int = Field(default=60000, ge=1)

    def to_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            timeout_s=self.timeout_ms / 1000.0,
            window_s=self.window_ms / 1000.0,
        )


class AnalysisSettings(_Section):
    significance_threshold: float = 7.0
    max_selected: int = Field(default=3, ge=0)


class PipelineConfig(_Section):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    dedupe: DedupeSettings = Field(default_factory=DedupeSettings)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    retries: RetriesConfig = Field(default_factory=RetriesConfig)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)


@lru_cache(maxsize=8)
def _load_pipeline_cached(resolved_path: str) -> PipelineConfig:
    data = read_yaml_config(Path(resolved_path))
    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid pipeline config: {exc}", path=resolved_path) from exc
    logger.info("pipeline_config_loaded", path=resolved_path)
    return config


def load_pipeline_config(path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    cfg_path = Path(path) if path else settings.pipeline_path
    return _load_pipeline_cached(str(cfg_path.resolve()))
