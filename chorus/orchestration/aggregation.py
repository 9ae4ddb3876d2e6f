from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol, Sequence

from ..core.config import AggregationSettings
from ..core.errors import ConfigurationError
from ..core.logging import get_logger
from ..core.metrics import increment_aggregation_repair, observe_aggregation_quality, record_strategy_selection
from ..schemas.results import (
    AgentResult,
    AggregatedResult,
    AggregationMetadata,
    ChatResponse,
    NextAction,
    QualityBreakdown,
)
from ..schemas.scene import SceneAnalysis, SceneType
from ..services.scoring import QualityAssessor, tokenize

logger = get_logger(name=__name__)

EMPTY_STRATEGY = "empty"
FALLBACK_STRATEGY = "fallback"

_THEMES: tuple[tuple[str, frozenset[str]], ...] = (
    ("creative", frozenset({"idea", "ideas", "creative", "imagine", "invent", "story"})),
    ("practical", frozenset({"step", "steps", "method", "practical", "plan", "try", "tool"})),
    ("emotional", frozenset({"feel", "feeling", "understand", "emotion", "support", "care"})),
    ("analytical", frozenset({"data", "analysis", "analyze", "because", "evidence", "reason"})),
)


@dataclass(slots=True)
class AggregationContext:
    conversation_id: str
    user_message: str
    scene: SceneAnalysis | None = None
    total_responders: int = 0
    execution_time_ms: float = 0.0


@dataclass(slots=True)
class StrategyOutput:
    """Responses a strategy kept, plus its own prior for each quality dimension."""

    responses: list[ChatResponse]
    priors: QualityBreakdown


@dataclass(slots=True)
class AggregationRecord:
    strategy: str
    input_count: int
    quality_score: float
    execution_time_ms: float
    conversation_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AggregationStrategy(Protocol):
    name: str
    description: str

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        ...

    def claims(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        """Whether this strategy should win outright, ahead of scoring."""
        ...

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        ...

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        ...


def _scene_type(context: AggregationContext) -> SceneType | None:
    return context.scene.scene_type if context.scene is not None else None


def _by_confidence(responses: Iterable[ChatResponse]) -> list[ChatResponse]:
    return sorted(responses, key=lambda response: response.confidence, reverse=True)


class _BaseStrategy:
    name = "base"
    description = ""

    def __init__(self, assessor: QualityAssessor | None = None) -> None:
        self._assessor = assessor or QualityAssessor()

    def claims(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return False

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        return 0.5


class ConsensusAggregation(_BaseStrategy):
    name = "consensus"
    description = "Keep the responses that agree with the rest of the set."

    def __init__(
        self,
        assessor: QualityAssessor | None = None,
        *,
        similarity_threshold: float = 0.3,
        limit: int = 3,
    ) -> None:
        super().__init__(assessor)
        self._threshold = similarity_threshold
        self._limit = limit

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return len(responses) >= 3

    def claims(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        contents = [response.content for response in responses]
        return len(contents) >= 3 and self._assessor.mean_pairwise_similarity(contents) >= self._threshold

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        return 0.7 if len(responses) > 3 else 0.5

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        agreed: list[ChatResponse] = []
        for index, response in enumerate(responses):
            others = [other.content for position, other in enumerate(responses) if position != index]
            if not others:
                continue
            average = sum(self._assessor.similarity(response.content, other) for other in others) / len(others)
            if average >= self._threshold:
                agreed.append(response)
        selected = agreed[: self._limit]
        count = len(selected)
        return StrategyOutput(
            responses=selected,
            priors=QualityBreakdown(
                coherence=0.9,
                completeness=min(count / 3, 1.0),
                relevance=0.8,
                diversity=max(0.3, 1 - count / max(len(responses), 1)),
                emotional_alignment=0.7,
            ),
        )


class QualityBasedAggregation(_BaseStrategy):
    name = "quality_based"
    description = "Keep the most confident responses."

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return len(responses) >= 1

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        return 0.8 if _scene_type(context) == SceneType.PROBLEM_SOLVING else 0.5

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        selected = _by_confidence(responses)[:3]
        return StrategyOutput(
            responses=selected,
            priors=QualityBreakdown(
                coherence=0.8,
                completeness=min(len(selected) / 2, 1.0),
                relevance=0.9,
                diversity=min(len(selected) / max(len(responses), 1), 1.0),
                emotional_alignment=0.7,
            ),
        )


class ThematicAggregation(_BaseStrategy):
    name = "thematic"
    description = "Keep the most confident response for each theme."

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return len(responses) >= 2 and _scene_type(context) in {
            SceneType.CREATIVE_BRAINSTORM,
            SceneType.PROBLEM_SOLVING,
        }

    def claims(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return _scene_type(context) == SceneType.CREATIVE_BRAINSTORM

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        return 0.8 if _scene_type(context) == SceneType.CREATIVE_BRAINSTORM else 0.5

    @staticmethod
    def theme_of(content: str) -> str:
        tokens = tokenize(content)
        for theme, keywords in _THEMES:
            if tokens & keywords:
                return theme
        return "general"

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        best: dict[str, ChatResponse] = {}
        for response in responses:
            theme = self.theme_of(response.content)
            current = best.get(theme)
            if current is None or response.confidence > current.confidence:
                best[theme] = response
        selected = list(best.values())
        return StrategyOutput(
            responses=selected,
            priors=QualityBreakdown(
                coherence=0.7,
                completeness=min(len(selected) / 3, 1.0),
                relevance=0.8,
                diversity=min(len(selected) / max(len(responses) - 1, 1), 1.0),
                emotional_alignment=0.6,
            ),
        )


class SequentialAggregation(_BaseStrategy):
    name = "sequential"
    description = "Keep every response in execution order."

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return True

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        return 0.7 if len(responses) <= 2 else 0.5

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        selected = list(responses)
        return StrategyOutput(
            responses=selected,
            priors=QualityBreakdown(
                coherence=0.8,
                completeness=min(len(selected) / 3, 1.0),
                relevance=0.7,
                diversity=min(len(selected) / max(len(selected) - 1, 1), 1.0),
                emotional_alignment=0.7,
            ),
        )


class EmotionalAggregation(_BaseStrategy):
    name = "emotional"
    description = "Keep responses whose tone matches the scene's emotion."

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        scene = context.scene
        return scene is not None and (
            scene.scene_type == SceneType.EMOTIONAL_SUPPORT or scene.emotional_intensity > 0.6
        )

    def claims(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return _scene_type(context) == SceneType.EMOTIONAL_SUPPORT

    def fitness(self, responses: Sequence[ChatResponse], context: AggregationContext) -> float:
        return 0.8 if _scene_type(context) == SceneType.EMOTIONAL_SUPPORT else 0.5

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        target = context.scene.emotion if context.scene is not None else None
        aligned = (
            [response for response in responses if self._assessor.alignment(response.content, target) > 0.5]
            if target is not None
            else []
        )
        selected = aligned or list(responses[:2])
        return StrategyOutput(
            responses=selected,
            priors=QualityBreakdown(
                coherence=0.7,
                completeness=min(len(selected) / 2, 1.0),
                relevance=0.8,
                diversity=0.6,
                emotional_alignment=0.9,
            ),
        )


class HybridAggregation(_BaseStrategy):
    name = "hybrid"
    description = "Confidence cut, then a diversity filter, then an emotion check."

    def __init__(
        self,
        assessor: QualityAssessor | None = None,
        *,
        keep_ratio: float = 0.7,
        diversity_threshold: float = 0.7,
        alignment_floor: float = 0.3,
    ) -> None:
        super().__init__(assessor)
        self._keep_ratio = keep_ratio
        self._diversity_threshold = diversity_threshold
        self._alignment_floor = alignment_floor

    def is_applicable(self, responses: Sequence[ChatResponse], context: AggregationContext) -> bool:
        return len(responses) >= 3 and context.scene is not None and context.scene.confidence > 0.7

    def aggregate(self, responses: Sequence[ChatResponse], context: AggregationContext) -> StrategyOutput:
        confident = _by_confidence(responses)[: math.ceil(len(responses) * self._keep_ratio)]
        diverse: list[ChatResponse] = []
        for response in confident:
            if all(
                self._assessor.similarity(response.content, kept.content) <= self._diversity_threshold
                for kept in diverse
            ):
                diverse.append(response)
        selected = diverse
        if context.scene is not None:
            target = context.scene.emotion
            aligned = [
                response
                for response in diverse
                if self._assessor.alignment(response.content, target) > self._alignment_floor
            ]
            selected = aligned or diverse
        return StrategyOutput(
            responses=selected,
            priors=QualityBreakdown(
                coherence=0.8,
                completeness=min(len(selected) / 3, 1.0),
                relevance=0.85,
                diversity=0.8,
                emotional_alignment=0.8,
            ),
        )


def default_aggregation_strategies(
    assessor: QualityAssessor | None = None,
    settings: AggregationSettings | None = None,
) -> list[AggregationStrategy]:
    settings = settings or AggregationSettings()
    assessor = assessor or QualityAssessor()
    return [
        ConsensusAggregation(
            assessor,
            similarity_threshold=settings.consensus_similarity,
            limit=settings.consensus_limit,
        ),
        QualityBasedAggregation(assessor),
        ThematicAggregation(assessor),
        SequentialAggregation(assessor),
        EmotionalAggregation(assessor),
        HybridAggregation(assessor),
    ]


def _blend(measured: QualityBreakdown, priors: QualityBreakdown) -> QualityBreakdown:
    values = {
        dimension: round(max(0.0, min(1.0, 0.5 * getattr(measured, dimension) + 0.5 * getattr(priors, dimension))), 4)
        for dimension in QualityBreakdown.WEIGHTS
    }
    return QualityBreakdown(**values)


class ResultAggregator:
    """Merge responder results into one quality-scored result.

    Strategy selection mirrors the scheduler: a strategy that claims the
    result set wins outright, otherwise applicable strategies are ranked by
    ``0.4 * applicability + 0.3 * history + 0.3 * fitness`` with ties going to
    the earlier registration. A low-scoring result gets one bounded repair
    pass before advisory recommendations are attached.
    """

    def __init__(
        self,
        strategies: Iterable[AggregationStrategy] | None = None,
        *,
        assessor: QualityAssessor | None = None,
        settings: AggregationSettings | None = None,
        default_history_score: float = 0.5,
    ) -> None:
        self._settings = settings or AggregationSettings()
        self._assessor = assessor or QualityAssessor()
        self._default_history_score = default_history_score
        self._lock = threading.Lock()
        self._strategies: tuple[AggregationStrategy, ...] = ()
        self._history: deque[AggregationRecord] = deque(maxlen=self._settings.history_limit)
        initial = (
            default_aggregation_strategies(self._assessor, self._settings) if strategies is None else strategies
        )
        for strategy in initial:
            self.register_strategy(strategy)

    @property
    def strategies(self) -> tuple[AggregationStrategy, ...]:
        return self._strategies

    @property
    def assessor(self) -> QualityAssessor:
        return self._assessor

    def register_strategy(self, strategy: AggregationStrategy) -> None:
        if not getattr(strategy, "name", None):
            raise ConfigurationError("Aggregation strategy must define a name")
        with self._lock:
            current = list(self._strategies)
            for index, existing in enumerate(current):
                if existing.name == strategy.name:
                    current[index] = strategy
                    logger.warning("aggregation_strategy_replaced", strategy=strategy.name)
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

    def aggregate(self, results: Sequence[AgentResult], context: AggregationContext) -> AggregatedResult:
        started = time.perf_counter()
        responses = [
            ChatResponse(
                responder_id=result.responder_id or f"responder-{index}",
                content=result.content,
                confidence=result.confidence,
                role=result.role,
            )
            for index, result in enumerate(results)
            if result.success and result.content.strip()
        ]
        total = context.total_responders or len(results)
        if not responses:
            logger.info("aggregation_empty", conversation=context.conversation_id, total=total)
            return self.empty_result(total_responders=total)

        strategy, path = self._select(responses, context)
        try:
            if strategy is None:
                raise LookupError("no applicable aggregation strategy")
            output = strategy.aggregate(responses, context)
            if not output.responses:
                raise ValueError(f"strategy {strategy.name} selected no responses")
            name, priors = strategy.name, output.priors
            selected = list(output.responses)
        except Exception as exc:
            logger.warning("aggregation_fallback_used", error=str(exc), conversation=context.conversation_id)
            name, path, priors, selected = FALLBACK_STRATEGY, "fallback", QualityBreakdown.uniform(0.6), responses

        record_strategy_selection(catalog="aggregation", strategy=name, path=path)
        breakdown = _blend(self._assessor.measure([r.content for r in selected], context.user_message, context.scene), priors)
        repaired = False
        if breakdown.overall() < self._settings.minimum_score:
            selected, breakdown, repaired = self._repair(selected, breakdown, priors, context)

        quality = breakdown.overall()
        result = AggregatedResult(
            success=bool(selected),
            final_responses=selected,
            quality_score=quality,
            confidence=sum(response.confidence for response in selected) / len(selected),
            metadata=AggregationMetadata(
                strategy=name,
                total_responders=total,
                successful_responders=len(responses),
                quality_breakdown=breakdown,
                repaired=repaired,
                extras={"selection": path, "aggregation_time_ms": round((time.perf_counter() - started) * 1000, 3)},
            ),
        )
        result.recommendations = self.recommendations(result, context)
        result.next_actions = self.next_actions(result, context)

        self._history.append(
            AggregationRecord(
                strategy=name,
                input_count=len(responses),
                quality_score=quality,
                execution_time_ms=(time.perf_counter() - started) * 1000,
                conversation_id=context.conversation_id,
            )
        )
        observe_aggregation_quality(strategy=name, score=quality)
        logger.info(
            "aggregation_completed",
            strategy=name,
            path=path,
            responses=len(selected),
            quality=round(quality, 4),
            repaired=repaired,
        )
        return result

    def empty_result(self, *, total_responders: int = 0) -> AggregatedResult:
        return AggregatedResult(
            success=False,
            final_responses=[],
            quality_score=0.0,
            confidence=0.0,
            metadata=AggregationMetadata(
                strategy=EMPTY_STRATEGY,
                total_responders=total_responders,
                successful_responders=0,
                quality_breakdown=QualityBreakdown(),
            ),
        )

    def history_score(self, strategy_name: str) -> float:
        records = [record for record in self._history if record.strategy == strategy_name]
        if not records:
            return self._default_history_score
        return min(sum(record.quality_score for record in records) / len(records), 1.0)

    def score_strategies(
        self,
        responses: Sequence[ChatResponse],
        context: AggregationContext,
    ) -> list[tuple[AggregationStrategy, float]]:
        scored: list[tuple[AggregationStrategy, float]] = []
        for strategy in self._strategies:
            try:
                if not strategy.is_applicable(responses, context):
                    continue
                fitness = min(max(strategy.fitness(responses, context), 0.0), 1.0)
            except Exception:
                logger.warning("aggregation_strategy_check_failed", strategy=strategy.name, exc_info=True)
                continue
            score = 0.4 + 0.3 * self.history_score(strategy.name) + 0.3 * fitness
            scored.append((strategy, round(score, 4)))
        return sorted(scored, key=lambda item: item[1], reverse=True)

    def _select(
        self,
        responses: Sequence[ChatResponse],
        context: AggregationContext,
    ) -> tuple[AggregationStrategy | None, str]:
        scored = self.score_strategies(responses, context)
        if not scored:
            return None, "fallback"
        for strategy, _ in sorted(scored, key=lambda item: self._strategies.index(item[0])):
            if strategy.claims(responses, context):
                return strategy, "override"
        return scored[0][0], "scored"

    def _repair(
        self,
        selected: list[ChatResponse],
        breakdown: QualityBreakdown,
        priors: QualityBreakdown,
        context: AggregationContext,
    ) -> tuple[list[ChatResponse], QualityBreakdown, bool]:
        settings = self._settings
        repaired = list(selected)
        if breakdown.coherence < settings.minimum_coherence:
            deduplicated: list[ChatResponse] = []
            for response in repaired:
                if all(
                    self._assessor.similarity(response.content, kept.content) <= settings.duplicate_similarity
                    for kept in deduplicated
                ):
                    deduplicated.append(response)
            repaired = deduplicated
        if breakdown.relevance < settings.minimum_relevance:
            relevant = [
                response
                for response in repaired
                if self._assessor.relevance(response.content, context.user_message) > settings.relevance_floor
            ]
            repaired = relevant or repaired

        changed = [response.responder_id for response in repaired] != [response.responder_id for response in selected]
        increment_aggregation_repair(changed=changed)
        if not changed or not repaired:
            return selected, breakdown, False
        measured = self._assessor.measure([r.content for r in repaired], context.user_message, context.scene)
        logger.info("aggregation_repaired", before=len(selected), after=len(repaired))
        return repaired, _blend(measured, priors), True

    def recommendations(self, result: AggregatedResult, context: AggregationContext) -> list[str]:
        breakdown = result.metadata.quality_breakdown
        notes: list[str] = []
        if result.metadata.successful_responders < result.metadata.total_responders:
            notes.append("Responder success rate is low; review responder configuration.")
        if breakdown.coherence < 0.7:
            notes.append("Strengthen coordination between responders to improve coherence.")
        if breakdown.diversity < 0.5:
            notes.append("Bring in more varied responder perspectives.")
        if context.execution_time_ms > 10_000:
            notes.append("Reduce end-to-end response time.")
        return notes

    def next_actions(self, result: AggregatedResult, context: AggregationContext) -> list[NextAction]:
        actions: list[NextAction] = []
        if result.quality_score > 0.8:
            actions.append(NextAction(action="completion", priority=0.9, reason="Aggregated quality is good."))
        elif result.quality_score >= 0.6:
            actions.append(NextAction(action="follow_up", priority=0.7, reason="A follow-up could raise quality."))
        else:
            actions.append(NextAction(action="escalation", priority=0.8, reason="Aggregated quality is low."))
        if context.scene is not None and context.scene.user_intent.urgency_level > 0.7:
            actions.append(
                NextAction(action="clarification", priority=0.9, reason="The request is urgent; confirm intent quickly.")
            )
        return sorted(actions, key=lambda action: action.priority, reverse=True)

    def status(self) -> dict[str, Any]:
        history = list(self._history)
        return {
            "strategies": [strategy.name for strategy in self._strategies],
            "total_aggregations": len(history),
            "average_quality": (
                round(sum(record.quality_score for record in history) / len(history), 4) if history else 0.0
            ),
        }


__all__ = [
    "AggregationContext",
    "AggregationRecord",
    "AggregationStrategy",
    "ConsensusAggregation",
    "EmotionalAggregation",
    "HybridAggregation",
    "QualityBasedAggregation",
    "ResultAggregator",
    "SequentialAggregation",
    "StrategyOutput",
    "ThematicAggregation",
    "default_aggregation_strategies",
]
