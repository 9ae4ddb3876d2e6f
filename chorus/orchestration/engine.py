from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from ..agents.base import Responder
from ..agents.registry import ResponderRegistry
from ..core.config import Settings, get_settings
from ..core.errors import ConfigurationError
from ..core.logging import get_logger
from ..core.metrics import mark_turn_completed, mark_turn_started, set_metrics_enabled
from ..schemas.events import OrchestrationEvent
from ..schemas.messages import AgentMessage, MessageMetadata
from ..schemas.plan import ExecutionPlan
from ..schemas.results import AgentResult, AggregatedResult, TurnResult
from ..schemas.scene import SceneAnalysis
from ..services.scene import KeywordSceneClassifier, SceneClassifier, default_scene_analysis
from .aggregation import AggregationContext, AggregationStrategy, ResultAggregator
from .enums import EventType, MessageType
from .executor import PhaseExecutor, TurnInput
from .middleware import MessageMiddleware
from .routing import MessageRouter, RoutingContext, RoutingRule
from .scheduler import ExecutionRecord, IntelligentScheduler
from .strategies import SchedulingStrategy

logger = get_logger(name=__name__)

EventSink = Callable[[OrchestrationEvent], Awaitable[None]]

ORCHESTRATOR_SENDER = "orchestrator"


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class Orchestrator:
    """Single entry point that turns one user message into an aggregated reply.

    Classification, scheduling, phase execution, routing and aggregation are
    injected collaborators. ``process_turn`` always returns a ``TurnResult``;
    failures anywhere inside a turn end up as ``success=False`` rather than
    an exception.
    """

    def __init__(
        self,
        *,
        registry: ResponderRegistry | None = None,
        scheduler: IntelligentScheduler | None = None,
        executor: PhaseExecutor | None = None,
        router: MessageRouter | None = None,
        aggregator: ResultAggregator | None = None,
        classifier: SceneClassifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        set_metrics_enabled(self._settings.observability.prometheus_enabled)
        self.registry = registry or ResponderRegistry()
        self.scheduler = scheduler or IntelligentScheduler(settings=self._settings.scheduling)
        self.executor = executor or PhaseExecutor(settings=self._settings.execution)
        self.router = router or MessageRouter(settings=self._settings.routing)
        self.aggregator = aggregator or ResultAggregator(settings=self._settings.aggregation)
        self.classifier: SceneClassifier = classifier or KeywordSceneClassifier()

        if not self.scheduler.strategies:
            raise ConfigurationError("At least one scheduling strategy must be registered")
        if not self.aggregator.strategies:
            raise ConfigurationError("At least one aggregation strategy must be registered")

    @property
    def settings(self) -> Settings:
        return self._settings

    # administration

    def register_responder(self, responder: Responder) -> None:
        self.registry.register(responder)

    def unregister_responder(self, responder_id: str) -> bool:
        return self.registry.unregister(responder_id)

    def register_scheduling_strategy(self, strategy: SchedulingStrategy) -> None:
        self.scheduler.register_strategy(strategy)

    def register_aggregation_strategy(self, strategy: AggregationStrategy) -> None:
        self.aggregator.register_strategy(strategy)

    def add_routing_rule(self, rule: RoutingRule) -> None:
        self.router.add_rule(rule)

    def remove_routing_rule(self, rule_id: str) -> bool:
        return self.router.remove_rule(rule_id)

    def add_middleware(self, name: str, middleware: MessageMiddleware) -> None:
        self.router.add_middleware(name, middleware)

    # turn processing

    async def process_turn(
        self,
        conversation_id: str,
        user_message: str,
        responder_pool: Iterable[str | Responder] | None = None,
        *,
        history: Sequence[Mapping[str, Any]] | None = None,
        scene: SceneAnalysis | None = None,
        metadata: Mapping[str, Any] | None = None,
        on_event: EventSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        started = time.perf_counter()
        tracked = mark_turn_started()
        await self._emit(on_event, EventType.ORCHESTRATION_STARTED, conversation_id, {"message_length": len(user_message)})
        try:
            result = await self._run_turn(
                conversation_id,
                user_message,
                responder_pool,
                history=[dict(entry) for entry in history or ()],
                scene=scene,
                metadata=dict(metadata or {}),
                on_event=on_event,
                cancel_event=cancel_event,
                started=started,
            )
        except Exception as exc:  # pragma: no cover - defensive guard
            logger.exception("turn_failed", conversation=conversation_id)
            result = TurnResult(
                conversation_id=conversation_id,
                success=False,
                total_execution_time_ms=_elapsed_ms(started),
                error=str(exc) or type(exc).__name__,
            )

        event = EventType.ORCHESTRATION_COMPLETED if result.success else EventType.ORCHESTRATION_FAILED
        await self._emit(
            on_event,
            event,
            conversation_id,
            {
                "success": result.success,
                "quality": result.quality,
                "agents_used": list(result.agents_used),
                "error": result.error,
                "total_execution_time_ms": round(result.total_execution_time_ms, 2),
            },
        )
        mark_turn_completed(
            status="success" if result.success else "failure",
            responder_count=len(result.agents_used),
            latency=time.perf_counter() - started,
            tracked=tracked,
        )
        logger.info(
            "turn_completed",
            conversation=conversation_id,
            success=result.success,
            strategy=result.strategy,
            aggregation=result.aggregation_strategy,
            quality=round(result.quality, 4),
            responses=len(result.responses),
        )
        return result

    async def _run_turn(
        self,
        conversation_id: str,
        user_message: str,
        responder_pool: Iterable[str | Responder] | None,
        *,
        history: list[dict[str, Any]],
        scene: SceneAnalysis | None,
        metadata: dict[str, Any],
        on_event: EventSink | None,
        cancel_event: asyncio.Event | None,
        started: float,
    ) -> TurnResult:
        responders = self.resolve_pool(responder_pool)
        if not responders:
            logger.warning("turn_without_responders", conversation=conversation_id)
            return TurnResult(
                conversation_id=conversation_id,
                success=False,
                total_execution_time_ms=_elapsed_ms(started),
                error="no responders available",
            )

        if scene is None:
            scene = await self.classify(user_message, history=history, responders=responders)
        await self._emit(
            on_event,
            EventType.SCENE_ANALYZED,
            conversation_id,
            {
                "scene_type": scene.scene_type.value,
                "emotion": scene.emotion.value,
                "confidence": scene.confidence,
                "urgency": scene.user_intent.urgency_level,
            },
        )

        routing_context = RoutingContext(conversation_id=conversation_id, responders=responders, scene=scene)
        await self._route(
            MessageType.SCENE_ANALYSIS,
            {"scene": scene.model_dump(mode="json")},
            routing_context,
            priority=0.8,
        )

        plan = self.scheduler.schedule(scene, responders)
        await self._emit(on_event, EventType.PLAN_CREATED, conversation_id, self._plan_summary(plan))

        async def phase_events(event: EventType, data: dict[str, Any]) -> None:
            await self._emit(on_event, event, conversation_id, data)
            if event == EventType.RESPONDER_COMPLETE and not data.get("success", True):
                await self._route(
                    MessageType.EXECUTION_ERROR,
                    {
                        "responder_id": data.get("responder"),
                        "phase": data.get("phase"),
                        "error": data.get("error"),
                        "error_kind": data.get("error_kind"),
                    },
                    routing_context,
                    priority=0.7,
                )

        turn = TurnInput(
            conversation_id=conversation_id,
            user_message=user_message,
            scene=scene,
            responders={responder.id: responder for responder in responders},
            history=history,
            metadata=metadata,
            cancel_event=cancel_event,
        )
        results = await self.executor.run_plan(plan, turn, on_event=phase_events)

        aggregated = self._aggregate(results, conversation_id, user_message, scene, _elapsed_ms(started))
        await self._emit(
            on_event,
            EventType.AGGREGATION_COMPLETE,
            conversation_id,
            {
                "strategy": aggregated.metadata.strategy,
                "quality": aggregated.quality_score,
                "responses": len(aggregated.final_responses),
                "repaired": aggregated.metadata.repaired,
            },
        )
        await self._route(
            MessageType.AGGREGATION_COMPLETED,
            {
                "strategy": aggregated.metadata.strategy,
                "quality_score": aggregated.quality_score,
                "responses": len(aggregated.final_responses),
            },
            routing_context,
            priority=0.7,
        )

        elapsed = _elapsed_ms(started)
        self.scheduler.record_execution(
            ExecutionRecord(
                strategy=plan.strategy_used,
                success=aggregated.success,
                execution_time_ms=elapsed,
                quality_score=aggregated.quality_score,
                responder_count=len(results),
                conversation_id=conversation_id,
            )
        )
        return TurnResult(
            conversation_id=conversation_id,
            success=aggregated.success,
            responses=list(aggregated.final_responses),
            agents_used=self._agents_used(results),
            quality=aggregated.quality_score,
            total_execution_time_ms=elapsed,
            strategy=plan.strategy_used,
            aggregation_strategy=aggregated.metadata.strategy,
            aggregated=aggregated,
            error=None if aggregated.success else "no successful responder results",
        )

    def resolve_pool(self, responder_pool: Iterable[str | Responder] | None) -> list[Responder]:
        """Map a pool of ids or responders to responders; unknown ids are ignored."""
        if responder_pool is None:
            return self.registry.all()
        resolved: list[Responder] = []
        seen: set[str] = set()
        for entry in responder_pool:
            if isinstance(entry, str):
                responder = self.registry.get(entry)
                if responder is None:
                    logger.warning("responder_not_registered", responder=entry)
                    continue
            else:
                responder = entry
            if responder.id in seen:
                continue
            seen.add(responder.id)
            resolved.append(responder)
        return resolved

    async def classify(
        self,
        user_message: str,
        *,
        history: Sequence[Mapping[str, Any]] = (),
        responders: Sequence[Responder] = (),
    ) -> SceneAnalysis:
        try:
            scene = await self.classifier.classify(user_message, history=list(history), responders=list(responders))
        except Exception as exc:
            logger.warning("scene_classification_failed", error=str(exc) or type(exc).__name__)
            return default_scene_analysis(responders, reason="classification failed")
        if not isinstance(scene, SceneAnalysis):
            logger.warning("scene_classification_invalid", result_type=type(scene).__name__)
            return default_scene_analysis(responders, reason="classification returned an invalid result")
        return scene

    def _aggregate(
        self,
        results: Sequence[AgentResult],
        conversation_id: str,
        user_message: str,
        scene: SceneAnalysis,
        execution_time_ms: float,
    ) -> AggregatedResult:
        context = AggregationContext(
            conversation_id=conversation_id,
            user_message=user_message,
            scene=scene,
            total_responders=len(results),
            execution_time_ms=execution_time_ms,
        )
        try:
            return self.aggregator.aggregate(results, context)
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("aggregation_failed", conversation=conversation_id)
            return self.aggregator.empty_result(total_responders=len(results))

    async def _route(
        self,
        message_type: MessageType,
        payload: dict[str, Any],
        context: RoutingContext,
        *,
        priority: float = 0.5,
    ) -> None:
        message = AgentMessage(
            type=message_type.value,
            payload=payload,
            metadata=MessageMetadata(
                sender=ORCHESTRATOR_SENDER,
                priority=priority,
                conversation_id=context.conversation_id,
            ),
        )
        try:
            await self.router.route(message, context)
        except Exception:  # pragma: no cover - routing is advisory
            logger.warning("turn_routing_failed", type=message_type.value, exc_info=True)

    @staticmethod
    def _agents_used(results: Sequence[AgentResult]) -> list[str]:
        used: list[str] = []
        for result in results:
            if result.responder_id and result.responder_id not in used:
                used.append(result.responder_id)
        return used

    @staticmethod
    def _plan_summary(plan: ExecutionPlan) -> dict[str, Any]:
        return {
            "strategy": plan.strategy_used,
            "phases": [
                {"name": phase.name, "mode": phase.mode.value, "responders": [a.responder_id for a in phase.agents]}
                for phase in plan.phases
            ],
            "quality_expectation": plan.quality_expectation,
            "complexity": plan.complexity.value,
        }

    @staticmethod
    async def _emit(
        on_event: EventSink | None,
        event: EventType,
        conversation_id: str,
        data: dict[str, Any],
    ) -> None:
        if on_event is None:
            return
        try:
            await on_event(OrchestrationEvent(type=event.value, conversation_id=conversation_id, data=data))
        except Exception:
            logger.warning("orchestration_event_failed", event_type=event.value, exc_info=True)

    def health(self) -> dict[str, Any]:
        scheduler_status = self.scheduler.status()
        return {
            "responders": len(self.registry),
            "scheduler": scheduler_status,
            "aggregator": self.aggregator.status(),
            "router": self.router.stats(),
            "healthy": bool(scheduler_status["healthy"]),
        }

    async def aclose(self) -> None:
        await self.router.aclose()


__all__ = ["EventSink", "Orchestrator"]
