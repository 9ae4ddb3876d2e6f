from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    PIPELINE = "pipeline"
    CONDITIONAL = "conditional"


class InteractionComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class BackoffKind(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ConditionType(str, Enum):
    SCENE_CONFIDENCE = "scene_confidence"
    RESPONDER_POOL_SIZE = "responder_pool_size"


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=1, ge=1)
    backoff_ms: int = Field(default=0, ge=0)
    backoff: BackoffKind = BackoffKind.FIXED
    retryable_conditions: list[str] = Field(default_factory=list)

    def is_retryable(self, kind: str, message: str) -> bool:
        return any(condition == kind or condition in message for condition in self.retryable_conditions)


class ExecutionCondition(BaseModel):
    """Gate evaluated before a phase runs; the phase is skipped when ``value < threshold``."""

    type: ConditionType
    threshold: float


class AgentExecution(BaseModel):
    responder_id: str = Field(..., min_length=1)
    priority: float = Field(default=0.5, ge=0.0, le=1.0)
    expected_role: str = "participant"
    estimated_duration_ms: int = Field(default=4_000, ge=0)
    retry_policy: RetryPolicy | None = None


class ExecutionPhase(BaseModel):
    name: str = Field(..., min_length=1)
    agents: list[AgentExecution] = Field(default_factory=list)
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    dependencies: list[str] = Field(default_factory=list)
    timeout_ms: int = Field(default=15_000, ge=1)
    conditions: list[ExecutionCondition] = Field(default_factory=list)


class ResourceRequirement(BaseModel):
    type: str
    amount: int = Field(default=0, ge=0)
    critical: bool = False


class ExecutionPlan(BaseModel):
    strategy_used: str
    phases: list[ExecutionPhase] = Field(default_factory=list)
    resource_requirements: list[ResourceRequirement] = Field(default_factory=list)
    quality_expectation: float = Field(default=0.7, ge=0.0, le=1.0)
    complexity: InteractionComplexity = InteractionComplexity.MODERATE
    total_estimated_time_ms: int = Field(default=0, ge=0)

    @property
    def responder_slots(self) -> int:
        return sum(len(phase.agents) for phase in self.phases)

    def responder_ids(self) -> list[str]:
        seen: list[str] = []
        for phase in self.phases:
            for agent in phase.agents:
                if agent.responder_id not in seen:
                    seen.append(agent.responder_id)
        return seen
