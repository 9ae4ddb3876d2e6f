from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from ..agents.base import Responder
from ..core.config import SchedulingSettings
from ..core.errors import ConfigurationError
from ..core.logging import get_logger
from ..core.metrics import record_strategy_selection
from ..schemas.plan import (
    AgentExecution,
    ExecutionMode,
    ExecutionPhase,
    ExecutionPlan,
    InteractionComplexity,
    ResourceRequirement,
    RetryPolicy,
)
from ..schemas.scene import SceneAnalysis, SceneType
from .enums import StrategyTrait
from .strategies import SchedulingStrategy, default_scheduling_strategies

logger = get_logger(name=__name__)

FALLBACK_STRATEGY = "fallback"


@dataclass(slots=True)
class ExecutionRecord:
    strategy: str
    success: bool
    execution_time_ms: float = 0.0
    quality_score: float = 0.0
    responder_count: int = 0
    conversation_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class StrategyScore:
    strategy: SchedulingStrategy
    applicability: float
    history: float
    fitness: float
    score: float


class IntelligentScheduler:
    """Pick a scheduling strategy for a scene and turn it into an execution plan."""

    def __init__(
        self,
        strategies: Iterable[SchedulingStrategy] | None = None,
        *,
        settings: SchedulingSettings | None = None,
    ) -> None:
        self._settings = settings or SchedulingSettings()
        self._lock = threading.Lock()
        self._strategies: tuple[SchedulingStrategy, ...] = ()
        self._history: deque[ExecutionRecord] = deque(maxlen=self._settings.history_limit)
        for strategy in default_scheduling_strategies() if strategies is None else strategies:
            self.register_strategy(strategy)

    @property
    def strategies(self) -> tuple[SchedulingStrategy, ...]:
        return self._strategies

    def register_strategy(self, strategy: SchedulingStrategy) -> None:
        if not getattr(strategy, "name", None):
            raise ConfigurationError("Scheduling strategy must define a name")
        with self._lock:
            current = list(self._strategies)
            for index, existing in enumerate(current):
                if existing.name == strategy.name:
                    current[index] = strategy
                    logger.warning("scheduling_strategy_replaced", strategy=strategy.name)
                    break
            else:
                current.append(strategy)
            self._strategies = tuple(current)

    def unregister_strategy(self, name: str) -> bool:
        with self._lock:
            remaining = tuple(strategy for strategy in self._strategies if strategy.name != name)
            removed = len(remaining) != len(self._strategies)
            self._strategies = remaining
        return removed

    def schedule(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        responders = list(responders)
        try:
            strategy, path = self._select(scene, responders)
            if strategy is None:
                logger.warning("no_applicable_strategy", scene=scene.scene_type.value)
                return self.fallback_plan(responders, reason="no_applicable_strategy")
            plan = strategy.create_plan(scene, responders)
            if not plan.phases or plan.responder_slots == 0:
                logger.warning("strategy_plan_empty", strategy=strategy.name)
                return self.fallback_plan(responders, reason="empty_plan")
            optimized = self.optimize(plan, scene)
        except Exception:
            logger.exception("strategy_plan_failed", scene=scene.scene_type.value)
            return self.fallback_plan(responders, reason="plan_error")

        record_strategy_selection(catalog="scheduling", strategy=optimized.strategy_used, path=path)
        logger.info(
            "strategy_selected",
            strategy=optimized.strategy_used,
            path=path,
            phases=len(optimized.phases),
            responders=optimized.responder_slots,
        )
        return optimized

    def score_strategies(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> list[StrategyScore]:
        """Score every applicable strategy, keeping registration order for ties."""
        settings = self._settings
        scores: list[StrategyScore] = []
        for strategy in self._strategies:
            try:
                applicable = strategy.is_applicable(scene, responders)
            except Exception:
                logger.warning("strategy_applicability_failed", strategy=strategy.name, exc_info=True)
                continue
            if not applicable:
                continue
            applicability = 1.0
            history = self.historical_success_rate(strategy.name)
            fitness = self.context_fitness(strategy, scene)
            score = (
                settings.applicability_weight * applicability
                + settings.history_weight * history
                + settings.fitness_weight * fitness
            )
            scores.append(
                StrategyScore(
                    strategy=strategy,
                    applicability=applicability,
                    history=round(history, 4),
                    fitness=round(fitness, 4),
                    score=round(score, 4),
                )
            )
        return sorted(scores, key=lambda item: item.score, reverse=True)

    def context_fitness(self, strategy: SchedulingStrategy, scene: SceneAnalysis) -> float:
        traits = getattr(strategy, "traits", frozenset())
        fitness = 0.5
        if StrategyTrait.EMOTION in traits and scene.scene_type == SceneType.EMOTIONAL_SUPPORT:
            fitness += 0.3
        if StrategyTrait.COLLABORATIVE in traits and scene.scene_type == SceneType.CREATIVE_BRAINSTORM:
            fitness += 0.3
        if (
            StrategyTrait.EFFICIENCY in traits
            and scene.user_intent.urgency_level > self._settings.timeout_shrink_urgency
        ):
            fitness += 0.2
        return min(fitness, 1.0)

    def optimize(self, plan: ExecutionPlan, scene: SceneAnalysis) -> ExecutionPlan:
        """Return a copy of ``plan`` adjusted for urgency, cohesion and confidence."""
        settings = self._settings
        optimized = plan.model_copy(deep=True)

        if scene.user_intent.urgency_level > settings.timeout_shrink_urgency:
            for phase in optimized.phases:
                phase.timeout_ms = max(settings.min_phase_timeout_ms, int(phase.timeout_ms * settings.timeout_scale))

        if scene.social_dynamics.group_cohesion < settings.cohesion_threshold:
            for phase in optimized.phases:
                if phase.mode == ExecutionMode.PARALLEL:
                    phase.mode = ExecutionMode.SEQUENTIAL

        if scene.confidence < settings.retry_confidence_threshold:
            for phase in optimized.phases:
                for agent in phase.agents:
                    if agent.retry_policy is None:
                        agent.retry_policy = RetryPolicy(
                            max_attempts=settings.default_retry_attempts,
                            backoff_ms=settings.default_retry_backoff_ms,
                            retryable_conditions=list(settings.default_retryable_conditions),
                        )
        return optimized

    def fallback_plan(self, responders: Sequence[Responder], *, reason: str = "fallback") -> ExecutionPlan:
        settings = self._settings
        selected = list(responders)[: settings.fallback_responder_limit]
        record_strategy_selection(catalog="scheduling", strategy=FALLBACK_STRATEGY, path="fallback")
        logger.warning("fallback_plan_used", reason=reason, responders=len(selected))
        return ExecutionPlan(
            strategy_used=FALLBACK_STRATEGY,
            phases=[
                ExecutionPhase(
                    name="fallback_response",
                    agents=[
                        AgentExecution(
                            responder_id=responder.id,
                            priority=round(max(0.0, 1.0 - index * 0.1), 2),
                            expected_role="participant",
                            estimated_duration_ms=5_000,
                            retry_policy=RetryPolicy(max_attempts=1),
                        )
                        for index, responder in enumerate(selected)
                    ],
                    mode=ExecutionMode.SEQUENTIAL,
                    timeout_ms=settings.fallback_phase_timeout_ms,
                )
            ],
            resource_requirements=[ResourceRequirement(type="llm_calls", amount=len(selected), critical=True)],
            quality_expectation=settings.fallback_quality_expectation,
            complexity=InteractionComplexity.SIMPLE,
            total_estimated_time_ms=len(selected) * 5_000,
        )

    def record_execution(self, record: ExecutionRecord) -> None:
        self._history.append(record)
        logger.debug(
            "strategy_execution_recorded",
            strategy=record.strategy,
            success=record.success,
            success_rate=round(self.historical_success_rate(record.strategy), 4),
        )

    def historical_success_rate(self, strategy_name: str) -> float:
        records = [record for record in self._history if record.strategy == strategy_name]
        if not records:
            return self._settings.default_success_rate
        return sum(1 for record in records if record.success) / len(records)

    def status(self) -> dict[str, Any]:
        history = list(self._history)
        total = len(history)
        successes = sum(1 for record in history if record.success)
        success_rate = successes / total if total else 0.0
        return {
            "strategies": [strategy.name for strategy in self._strategies],
            "total_executions": total,
            "success_rate": round(success_rate, 4),
            "strategy_success_rates": {
                strategy.name: round(self.historical_success_rate(strategy.name), 4) for strategy in self._strategies
            },
            "healthy": total == 0 or success_rate > 0.8,
        }

    def _select(
        self,
        scene: SceneAnalysis,
        responders: Sequence[Responder],
    ) -> tuple[SchedulingStrategy | None, str]:
        scored = self.score_strategies(scene, responders)
        if not scored:
            return None, "fallback"

        override = self._override(scene, [item.strategy for item in scored])
        if override is not None:
            return override, "override"
        return scored[0].strategy, "scored"

    def _override(
        self,
        scene: SceneAnalysis,
        applicable: Sequence[SchedulingStrategy],
    ) -> SchedulingStrategy | None:
        preferred: list[StrategyTrait] = []
        if scene.user_intent.urgency_level > self._settings.efficiency_override_urgency:
            preferred.append(StrategyTrait.EFFICIENCY)
        if scene.scene_type == SceneType.EMOTIONAL_SUPPORT:
            preferred.append(StrategyTrait.EMOTION)
        if scene.scene_type == SceneType.CREATIVE_BRAINSTORM:
            preferred.append(StrategyTrait.COLLABORATIVE)

        # applicable is score-ordered; registration order decides between peers
        registered = [strategy for strategy in self._strategies if strategy in applicable]
        for trait in preferred:
            for strategy in registered:
                if trait in getattr(strategy, "traits", frozenset()):
                    return strategy
        return None


__all__ = ["ExecutionRecord", "FALLBACK_STRATEGY", "IntelligentScheduler", "StrategyScore"]
