from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulingSettings(BaseModel):
    applicability_weight: float = Field(0.4, ge=0.0, le=1.0)
    history_weight: float = Field(0.3, ge=0.0, le=1.0)
    fitness_weight: float = Field(0.3, ge=0.0, le=1.0)
    default_success_rate: float = Field(
        0.5,
        ge=0.0,
        le=1.0,
        description="Historical success rate assumed for strategies without recorded executions.",
    )
    efficiency_override_urgency: float = Field(
        0.8,
        ge=0.0,
        le=1.0,
        description="Urgency above which an applicable efficiency strategy wins outright.",
    )
    timeout_shrink_urgency: float = Field(0.7, ge=0.0, le=1.0)
    timeout_scale: float = Field(0.8, gt=0.0, le=1.0)
    min_phase_timeout_ms: int = Field(5_000, ge=0)
    cohesion_threshold: float = Field(
        0.5,
        ge=0.0,
        le=1.0,
        description="Group cohesion below which parallel phases are serialized.",
    )
    retry_confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    default_retry_attempts: int = Field(2, ge=1)
    default_retry_backoff_ms: int = Field(1_000, ge=0)
    default_retryable_conditions: list[str] = Field(
        default_factory=lambda: ["llm_timeout", "parsing_error"],
    )
    fallback_responder_limit: int = Field(3, ge=1)
    fallback_quality_expectation: float = Field(0.6, ge=0.0, le=1.0)
    fallback_phase_timeout_ms: int = Field(15_000, ge=1)
    history_limit: int = Field(500, ge=1)


class ExecutionSettings(BaseModel):
    max_concurrency: int = Field(8, ge=1, description="Concurrent invocations allowed inside a parallel phase.")


class RoutingSettings(BaseModel):
    short_circuit_priority: float = Field(
        0.8,
        ge=0.0,
        le=1.0,
        description="Rules above this priority stop lower-priority rules once they deliver.",
    )
    delayed_delivery_ms: int = Field(1_000, ge=0)
    scheduled_delivery_ms: int = Field(5_000, ge=0)
    queue_max_requeues: int = Field(3, ge=0)
    queue_pacing_ms: int = Field(10, ge=0)
    history_limit: int = Field(1_000, ge=1)


class AggregationSettings(BaseModel):
    minimum_score: float = Field(0.7, ge=0.0, le=1.0)
    minimum_coherence: float = Field(0.6, ge=0.0, le=1.0)
    minimum_relevance: float = Field(0.8, ge=0.0, le=1.0)
    duplicate_similarity: float = Field(
        0.8,
        ge=0.0,
        le=1.0,
        description="Lexical similarity above which two responses count as duplicates during repair.",
    )
    relevance_floor: float = Field(0.3, ge=0.0, le=1.0)
    consensus_similarity: float = Field(0.3, ge=0.0, le=1.0)
    consensus_limit: int = Field(3, ge=1)
    history_limit: int = Field(1_000, ge=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)  # type: ignore[arg-type]
    routing: RoutingSettings = Field(default_factory=RoutingSettings)  # type: ignore[arg-type]
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="CHORUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
