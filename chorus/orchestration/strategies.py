from __future__ import annotations

from typing import Protocol, Sequence

from ..agents.base import Responder
from ..schemas.plan import (
    AgentExecution,
    ConditionType,
    ExecutionCondition,
    ExecutionMode,
    ExecutionPhase,
    ExecutionPlan,
    InteractionComplexity,
    ResourceRequirement,
)
from ..schemas.scene import ParticipationSuggestion, SceneAnalysis, SceneType
from .enums import StrategyTrait

_EMPATHY_MARKERS = ("emotion", "support", "empath", "comfort")
_CREATIVE_MARKERS = ("creative", "idea", "imagin")


class SchedulingStrategy(Protocol):
    name: str
    description: str
    traits: frozenset[StrategyTrait]

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        ...

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        ...


def candidate_suggestions(scene: SceneAnalysis, responders: Sequence[Responder]) -> list[ParticipationSuggestion]:
    """Ranked suggestions restricted to the available pool.

    When the classifier suggested nobody who is actually available, every
    pooled responder becomes a candidate in pool order.
    """
    available = {responder.id for responder in responders}
    ranked = [item for item in scene.ranked_participants() if item.responder_id in available]
    if ranked:
        return ranked
    return [
        ParticipationSuggestion(responder_id=responder.id, priority=round(max(0.1, 0.5 - 0.05 * index), 2))
        for index, responder in enumerate(responders)
    ]


def _matches(suggestion: ParticipationSuggestion, markers: Sequence[str]) -> bool:
    haystack = f"{suggestion.role} {suggestion.expected_contribution}".lower()
    return any(marker in haystack for marker in markers)


def _llm_calls(count: int) -> ResourceRequirement:
    return ResourceRequirement(type="llm_calls", amount=count, critical=True)


def _estimated_total(phases: Sequence[ExecutionPhase]) -> int:
    return sum(agent.estimated_duration_ms for phase in phases for agent in phase.agents)


class SequentialStrategy:
    name = "sequential"
    description = "Responders speak one after another, for discussions that need a logical order."
    traits: frozenset[StrategyTrait] = frozenset()

    def __init__(self, *, max_responders: int = 4, duration_ms: int = 4_000) -> None:
        self._max_responders = max_responders
        self._duration_ms = duration_ms

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        return (
            scene.scene_type in {SceneType.LEARNING_DISCUSSION, SceneType.PROBLEM_SOLVING}
            or scene.user_intent.expectation_type == "deep_discussion"
        )

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        selected = candidate_suggestions(scene, responders)[: self._max_responders]
        phase = ExecutionPhase(
            name="sequential_discussion",
            agents=[
                AgentExecution(
                    responder_id=item.responder_id,
                    priority=round(max(0.0, 1.0 - index * 0.1), 2),
                    expected_role=item.role,
                    estimated_duration_ms=self._duration_ms,
                )
                for index, item in enumerate(selected)
            ],
            mode=ExecutionMode.SEQUENTIAL,
            timeout_ms=max(1, len(selected)) * 5_000,
        )
        return ExecutionPlan(
            strategy_used=self.name,
            phases=[phase],
            resource_requirements=[_llm_calls(len(selected))],
            quality_expectation=0.8,
            complexity=InteractionComplexity.MODERATE,
            total_estimated_time_ms=len(selected) * self._duration_ms,
        )


class ParallelStrategy:
    name = "parallel"
    description = "Several responders answer at once for quick, multi-angle replies."
    traits: frozenset[StrategyTrait] = frozenset()

    def __init__(self, *, max_responders: int = 3) -> None:
        self._max_responders = max_responders

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        return (
            scene.user_intent.urgency_level > 0.6
            or scene.scene_type == SceneType.HUMOR_ENTERTAINMENT
            or scene.social_dynamics.group_cohesion > 0.7
        )

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        selected = candidate_suggestions(scene, responders)[: self._max_responders]
        phase = ExecutionPhase(
            name="parallel_response",
            agents=[
                AgentExecution(
                    responder_id=item.responder_id,
                    priority=item.priority,
                    expected_role=item.role,
                    estimated_duration_ms=5_000,
                )
                for item in selected
            ],
            mode=ExecutionMode.PARALLEL,
            timeout_ms=8_000,
        )
        return ExecutionPlan(
            strategy_used=self.name,
            phases=[phase],
            resource_requirements=[
                _llm_calls(len(selected)),
                ResourceRequirement(type="concurrent_responders", amount=len(selected), critical=True),
            ],
            quality_expectation=0.7,
            complexity=InteractionComplexity.MODERATE,
            total_estimated_time_ms=6_000,
        )


class AdaptiveDynamicStrategy:
    name = "adaptive_dynamic"
    description = "Primary responders first, then supporters once the lead has landed."
    traits: frozenset[StrategyTrait] = frozenset()

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        return scene.confidence > 0.8 or scene.analysis_depth == "deep"

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        candidates = candidate_suggestions(scene, responders)
        primary = [item for item in candidates if item.role == "primary_responder"][:2]
        supporters = [item for item in candidates if item.role in {"supporter", "moderator"}][:2]
        if not primary and not supporters:
            primary = candidates[:1]
            supporters = candidates[1:3]

        phases: list[ExecutionPhase] = []
        if primary:
            phases.append(
                ExecutionPhase(
                    name="primary_response",
                    agents=[
                        AgentExecution(
                            responder_id=item.responder_id,
                            priority=item.priority,
                            expected_role=item.role,
                            estimated_duration_ms=4_000,
                        )
                        for item in primary
                    ],
                    mode=ExecutionMode.PARALLEL if len(primary) > 1 else ExecutionMode.SEQUENTIAL,
                    timeout_ms=6_000,
                )
            )
        if supporters:
            phases.append(
                ExecutionPhase(
                    name="supportive_response",
                    agents=[
                        AgentExecution(
                            responder_id=item.responder_id,
                            priority=item.priority,
                            expected_role=item.role,
                            estimated_duration_ms=3_000,
                        )
                        for item in supporters
                    ],
                    mode=ExecutionMode.SEQUENTIAL,
                    dependencies=["primary_response"] if primary else [],
                    timeout_ms=5_000,
                    conditions=[ExecutionCondition(type=ConditionType.SCENE_CONFIDENCE, threshold=0.6)],
                )
            )

        slots = sum(len(phase.agents) for phase in phases)
        return ExecutionPlan(
            strategy_used=self.name,
            phases=phases,
            resource_requirements=[_llm_calls(slots)],
            quality_expectation=0.9,
            complexity=InteractionComplexity.COMPLEX,
            total_estimated_time_ms=_estimated_total(phases),
        )


class EmotionDrivenStrategy:
    name = "emotion_driven"
    description = "Empathetic responders take turns so the support reads as one voice."
    traits = frozenset({StrategyTrait.EMOTION})

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        return scene.scene_type == SceneType.EMOTIONAL_SUPPORT or scene.emotional_intensity > 0.6

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        candidates = candidate_suggestions(scene, responders)
        empathetic = [item for item in candidates if _matches(item, _EMPATHY_MARKERS)] or candidates
        selected = empathetic[:2]
        phase = ExecutionPhase(
            name="emotional_support",
            agents=[
                AgentExecution(
                    responder_id=item.responder_id,
                    priority=item.priority,
                    expected_role="emotional_supporter",
                    estimated_duration_ms=4_000,
                )
                for item in selected
            ],
            mode=ExecutionMode.SEQUENTIAL,
            timeout_ms=10_000,
        )
        return ExecutionPlan(
            strategy_used=self.name,
            phases=[phase],
            resource_requirements=[_llm_calls(len(selected))],
            quality_expectation=0.85,
            complexity=InteractionComplexity.MODERATE,
            total_estimated_time_ms=8_000,
        )


class CollaborativeStrategy:
    name = "collaborative"
    description = "Creative responders generate ideas together, then one synthesizes them."
    traits = frozenset({StrategyTrait.COLLABORATIVE})

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        return (
            scene.scene_type == SceneType.CREATIVE_BRAINSTORM
            or scene.conversation_flow.interaction_pattern == "brainstorming"
        )

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        candidates = candidate_suggestions(scene, responders)
        creative = ([item for item in candidates if _matches(item, _CREATIVE_MARKERS)] or candidates)[:3]
        phases = [
            ExecutionPhase(
                name="idea_generation",
                agents=[
                    AgentExecution(
                        responder_id=item.responder_id,
                        priority=item.priority,
                        expected_role="creative_contributor",
                        estimated_duration_ms=4_000,
                    )
                    for item in creative
                ],
                mode=ExecutionMode.PARALLEL,
                timeout_ms=6_000,
            ),
        ]
        if creative:
            phases.append(
                ExecutionPhase(
                    name="idea_synthesis",
                    agents=[
                        AgentExecution(
                            responder_id=creative[0].responder_id,
                            priority=1.0,
                            expected_role="synthesizer",
                            estimated_duration_ms=3_000,
                        )
                    ],
                    mode=ExecutionMode.SEQUENTIAL,
                    dependencies=["idea_generation"],
                    timeout_ms=5_000,
                )
            )
        return ExecutionPlan(
            strategy_used=self.name,
            phases=phases,
            resource_requirements=[_llm_calls(len(creative) + 1)],
            quality_expectation=0.8,
            complexity=InteractionComplexity.COMPLEX,
            total_estimated_time_ms=12_000,
        )


class EfficiencyOptimizedStrategy:
    name = "efficiency_optimized"
    description = "A single top-priority responder answers as fast as possible."
    traits = frozenset({StrategyTrait.EFFICIENCY})

    def __init__(self, *, duration_ms: int = 3_000) -> None:
        self._duration_ms = duration_ms

    def is_applicable(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> bool:
        return scene.user_intent.urgency_level > 0.7 or scene.user_intent.expectation_type == "quick_answer"

    def create_plan(self, scene: SceneAnalysis, responders: Sequence[Responder]) -> ExecutionPlan:
        selected = candidate_suggestions(scene, responders)[:1]
        phase = ExecutionPhase(
            name="rapid_response",
            agents=[
                AgentExecution(
                    responder_id=item.responder_id,
                    priority=1.0,
                    expected_role="rapid_responder",
                    estimated_duration_ms=self._duration_ms,
                )
                for item in selected
            ],
            mode=ExecutionMode.SEQUENTIAL,
            timeout_ms=4_000,
        )
        return ExecutionPlan(
            strategy_used=self.name,
            phases=[phase],
            resource_requirements=[_llm_calls(len(selected))],
            quality_expectation=0.7,
            complexity=InteractionComplexity.SIMPLE,
            total_estimated_time_ms=self._duration_ms,
        )


def default_scheduling_strategies() -> list[SchedulingStrategy]:
    return [
        SequentialStrategy(),
        ParallelStrategy(),
        AdaptiveDynamicStrategy(),
        EmotionDrivenStrategy(),
        CollaborativeStrategy(),
        EfficiencyOptimizedStrategy(),
    ]


__all__ = [
    "AdaptiveDynamicStrategy",
    "CollaborativeStrategy",
    "EfficiencyOptimizedStrategy",
    "EmotionDrivenStrategy",
    "ParallelStrategy",
    "SchedulingStrategy",
    "SequentialStrategy",
    "candidate_suggestions",
    "default_scheduling_strategies",
]
