from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field


class ResponseData(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ExecutionMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_time_ms: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=1, ge=0)


class AgentResult(BaseModel):
    """Outcome of a single responder invocation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    responder_id: str | None = None
    role: str | None = None
    data: ResponseData | None = None
    error: str | None = None
    error_kind: str | None = None
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)

    @property
    def content(self) -> str:
        return self.data.content if self.data is not None else ""

    @property
    def confidence(self) -> float:
        return self.data.confidence if self.data is not None else 0.0

    @classmethod
    def failure(
        cls,
        responder_id: str,
        error: str,
        *,
        kind: str = "execution_error",
        role: str | None = None,
        execution_time_ms: float = 0.0,
        attempts: int = 1,
    ) -> "AgentResult":
        return cls(
            success=False,
            responder_id=responder_id,
            role=role,
            error=error,
            error_kind=kind,
            metrics=ExecutionMetrics(execution_time_ms=max(0.0, execution_time_ms), attempts=attempts),
        )


class ChatResponse(BaseModel):
    responder_id: str
    content: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    role: str | None = None


class QualityBreakdown(BaseModel):
    """Five-dimensional quality measure; ``overall`` is the fixed weighted sum."""

    WEIGHTS: ClassVar[dict[str, float]] = {
        "coherence": 0.25,
        "completeness": 0.20,
        "relevance": 0.30,
        "diversity": 0.15,
        "emotional_alignment": 0.10,
    }

    coherence: float = Field(default=0.0, ge=0.0, le=1.0)
    completeness: float = Field(default=0.0, ge=0.0, le=1.0)
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    diversity: float = Field(default=0.0, ge=0.0, le=1.0)
    emotional_alignment: float = Field(default=0.0, ge=0.0, le=1.0)

    def overall(self) -> float:
        total = sum(getattr(self, dimension) * weight for dimension, weight in self.WEIGHTS.items())
        return max(0.0, min(1.0, total))

    @classmethod
    def uniform(cls, value: float) -> "QualityBreakdown":
        value = max(0.0, min(1.0, value))
        return cls(**{dimension: value for dimension in cls.WEIGHTS})


class AggregationMetadata(BaseModel):
    strategy: str
    total_responders: int = Field(default=0, ge=0)
    successful_responders: int = Field(default=0, ge=0)
    quality_breakdown: QualityBreakdown = Field(default_factory=QualityBreakdown)
    repaired: bool = False
    extras: dict[str, Any] = Field(default_factory=dict)


class NextAction(BaseModel):
    action: str
    priority: float = Field(default=0.5, ge=0.0, le=1.0)
    reason: str = ""


class AggregatedResult(BaseModel):
    success: bool
    final_responses: list[ChatResponse] = Field(default_factory=list)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    metadata: AggregationMetadata
    recommendations: list[str] = Field(default_factory=list)
    next_actions: list[NextAction] = Field(default_factory=list)


class TurnResult(BaseModel):
    """Structured outcome of one conversational turn returned to the caller."""

    conversation_id: str
    success: bool
    responses: list[ChatResponse] = Field(default_factory=list)
    agents_used: list[str] = Field(default_factory=list)
    quality: float = Field(default=0.0, ge=0.0, le=1.0)
    total_execution_time_ms: float = Field(default=0.0, ge=0.0)
    strategy: str | None = None
    aggregation_strategy: str | None = None
    aggregated: AggregatedResult | None = None
    error: str | None = None
