from __future__ import annotations

import asyncio
import contextlib
import re
import threading
import time
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..agents.base import Responder, responder_capabilities
from ..core.config import RoutingSettings
from ..core.errors import RoutingError
from ..core.logging import get_logger
from ..core.metrics import record_routing_execution
from ..schemas.messages import AgentMessage, RoutingExecution
from ..schemas.scene import SceneAnalysis
from .enums import ConditionOperator, DeliveryTiming, MessageType, RoutingConditionType, TargetType
from .middleware import MessageMiddleware, default_middleware

logger = get_logger(name=__name__)

DEFAULT_RULE_ID = "default"

Transformation = Callable[[AgentMessage, "RoutingContext"], "AgentMessage | None"]
TargetSelector = Callable[[Sequence[Responder], "RoutingContext"], Sequence[Responder]]
ConditionPredicate = Callable[[AgentMessage, "RoutingContext"], bool]


@dataclass(slots=True)
class RoutingContext:
    conversation_id: str
    responders: Sequence[Responder] = ()
    scene: SceneAnalysis | None = None
    original_message: AgentMessage | None = None


@dataclass(slots=True, frozen=True)
class RoutingCondition:
    type: RoutingConditionType
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    path: str | None = None
    predicate: ConditionPredicate | None = None


@dataclass(slots=True, frozen=True)
class RoutingTarget:
    type: TargetType
    responder_ids: tuple[str, ...] = ()
    selector: TargetSelector | None = None
    timing: DeliveryTiming = DeliveryTiming.IMMEDIATE
    delay_ms: int | None = None


@dataclass(slots=True, frozen=True)
class RoutingRule:
    id: str
    priority: float
    conditions: tuple[RoutingCondition, ...] = ()
    targets: tuple[RoutingTarget, ...] = ()
    transformations: tuple[Transformation, ...] = ()
    middleware: tuple[str, ...] = ()


@dataclass(slots=True)
class _QueuedMessage:
    message: AgentMessage
    context: RoutingContext
    requeues: int = 0


def _lookup_path(payload: Mapping[str, Any], path: str) -> Any:
    current: Any = payload
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
        if current is None:
            return None
    return current


def _compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        return actual is not None and str(expected) in str(actual)
    if operator == ConditionOperator.MATCHES:
        return actual is not None and re.search(str(expected), str(actual)) is not None
    if operator in {ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN}:
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right
    if operator == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set, frozenset)) and actual in expected
    return False


def evaluate_condition(condition: RoutingCondition, message: AgentMessage, context: RoutingContext) -> bool:
    kind = condition.type
    if kind == RoutingConditionType.CUSTOM:
        return bool(condition.predicate and condition.predicate(message, context))
    if kind == RoutingConditionType.CAPABILITY:
        wanted = str(condition.value)
        return any(wanted in responder_capabilities(responder) for responder in context.responders)

    if kind == RoutingConditionType.SENDER:
        actual: Any = message.metadata.sender
    elif kind == RoutingConditionType.MESSAGE_TYPE:
        actual = message.type
    elif kind == RoutingConditionType.PAYLOAD_FIELD:
        actual = _lookup_path(message.payload, condition.path or "")
    elif kind == RoutingConditionType.SCENE_TYPE:
        actual = context.scene.scene_type.value if context.scene is not None else None
    else:
        return False
    return _compare(condition.operator, actual, condition.value)


def _with_capability(capability: str) -> TargetSelector:
    def select(responders: Sequence[Responder], context: RoutingContext) -> list[Responder]:
        return [responder for responder in responders if capability in responder_capabilities(responder)]

    return select


def _addressed_recipient(responders: Sequence[Responder], context: RoutingContext) -> list[Responder]:
    message = context.original_message
    recipient = message.metadata.recipient if message is not None else None
    if not recipient:
        return []
    return [responder for responder in responders if responder.id == recipient]


def _message_type(value: MessageType) -> RoutingCondition:
    return RoutingCondition(type=RoutingConditionType.MESSAGE_TYPE, value=value.value)


def default_routing_rules() -> list[RoutingRule]:
    return [
        RoutingRule(
            id="scene_analysis_broadcast",
            priority=0.9,
            conditions=(_message_type(MessageType.SCENE_ANALYSIS),),
            targets=(RoutingTarget(type=TargetType.BROADCAST),),
            middleware=("scene_enrichment", "priority_adjustment"),
        ),
        RoutingRule(
            id="quality_assessment_routing",
            priority=0.8,
            conditions=(_message_type(MessageType.RESPONSE_BATCH),),
            targets=(RoutingTarget(type=TargetType.SINGLE, selector=_with_capability("quality_assessment")),),
        ),
        RoutingRule(
            id="execution_result_aggregation",
            priority=0.7,
            conditions=(_message_type(MessageType.EXECUTION_COMPLETED),),
            targets=(RoutingTarget(type=TargetType.SINGLE, selector=_with_capability("result_aggregation")),),
        ),
        RoutingRule(
            id="error_recovery_routing",
            priority=0.6,
            conditions=(_message_type(MessageType.EXECUTION_ERROR),),
            targets=(
                RoutingTarget(
                    type=TargetType.SINGLE,
                    selector=_with_capability("error_recovery"),
                    timing=DeliveryTiming.DELAYED,
                ),
            ),
        ),
        RoutingRule(
            id="execution_request_direct",
            priority=0.95,
            conditions=(_message_type(MessageType.EXECUTION_REQUEST),),
            targets=(RoutingTarget(type=TargetType.SINGLE, selector=_addressed_recipient),),
        ),
    ]


class MessageRouter:
    """Rule-based dispatcher for structured notifications between components.

    Routing a message is a function of the rule set, the message and the
    context: every rule works on its own copy of the message, and the only
    state the router keeps is its execution history and pending timers.
    """

    def __init__(
        self,
        rules: Iterable[RoutingRule] | None = None,
        *,
        middleware: Mapping[str, MessageMiddleware] | None = None,
        settings: RoutingSettings | None = None,
    ) -> None:
        self._settings = settings or RoutingSettings()
        self._lock = threading.Lock()
        self._rules: tuple[RoutingRule, ...] = ()
        self._middleware: Mapping[str, MessageMiddleware] = dict(
            default_middleware() if middleware is None else middleware
        )
        self._history: deque[RoutingExecution] = deque(maxlen=self._settings.history_limit)
        self._timers: set[asyncio.Task[None]] = set()
        self._queue: asyncio.Queue[_QueuedMessage] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        for rule in default_routing_rules() if rules is None else rules:
            self.add_rule(rule)

    @property
    def rules(self) -> tuple[RoutingRule, ...]:
        return self._rules

    @property
    def history(self) -> list[RoutingExecution]:
        return list(self._history)

    def add_rule(self, rule: RoutingRule) -> None:
        with self._lock:
            kept = [existing for existing in self._rules if existing.id != rule.id]
            if len(kept) != len(self._rules):
                logger.info("routing_rule_replaced", rule=rule.id)
            kept.append(rule)
            self._rules = tuple(kept)

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            kept = tuple(rule for rule in self._rules if rule.id != rule_id)
            removed = len(kept) != len(self._rules)
            self._rules = kept
        if removed:
            logger.info("routing_rule_removed", rule=rule_id)
        return removed

    def add_middleware(self, name: str, middleware: MessageMiddleware) -> None:
        with self._lock:
            updated = dict(self._middleware)
            updated[name] = middleware
            self._middleware = updated

    def match_rules(self, message: AgentMessage, context: RoutingContext) -> list[RoutingRule]:
        matched: list[RoutingRule] = []
        for rule in self._rules:
            try:
                if all(evaluate_condition(condition, message, context) for condition in rule.conditions):
                    matched.append(rule)
            except Exception:  # pragma: no cover - user predicates
                logger.warning("routing_condition_failed", rule=rule.id, exc_info=True)
        return sorted(matched, key=lambda rule: rule.priority, reverse=True)

    async def route(self, message: AgentMessage, context: RoutingContext) -> list[RoutingExecution]:
        if context.original_message is None:
            context = replace(context, original_message=message)

        rules = self.match_rules(message, context)
        if not rules:
            execution = await self._route_default(message, context)
            self._record(execution)
            return [execution]

        executions: list[RoutingExecution] = []
        for rule in rules:
            execution = await self._execute_rule(rule, message, context)
            executions.append(execution)
            self._record(execution)
            if execution.success and rule.priority > self._settings.short_circuit_priority:
                break
        return executions

    async def _execute_rule(
        self,
        rule: RoutingRule,
        message: AgentMessage,
        context: RoutingContext,
    ) -> RoutingExecution:
        started = time.perf_counter()
        working = message.model_copy(deep=True)
        delivered: list[str] = []
        scheduled: list[str] = []
        errors: list[str] = []

        try:
            for transform in rule.transformations:
                transformed = transform(working, context)
                if transformed is None:
                    logger.debug("routing_message_dropped", rule=rule.id, message=message.id)
                    return RoutingExecution(
                        rule_id=rule.id,
                        message_id=message.id,
                        success=False,
                        dropped=True,
                        execution_time_ms=(time.perf_counter() - started) * 1000,
                    )
                working = transformed

            middleware = self._middleware
            for name in rule.middleware:
                handler = middleware.get(name)
                if handler is None:
                    logger.warning("routing_middleware_missing", rule=rule.id, middleware=name)
                    continue
                working = await handler.process(working, context)
        except Exception as exc:
            logger.warning("routing_rule_failed", rule=rule.id, message=message.id, error=str(exc))
            errors.append(str(exc) or type(exc).__name__)
            return RoutingExecution(
                rule_id=rule.id,
                message_id=message.id,
                success=False,
                errors=errors,
                execution_time_ms=(time.perf_counter() - started) * 1000,
            )

        for target in rule.targets:
            try:
                recipients = self.resolve_targets(target, context)
            except Exception as exc:
                errors.append(f"target selection failed: {exc}")
                continue
            for responder in recipients:
                if target.timing == DeliveryTiming.IMMEDIATE:
                    try:
                        await self._deliver(working.model_copy(deep=True), responder)
                    except RoutingError as exc:
                        errors.append(str(exc))
                        continue
                    delivered.append(responder.id)
                else:
                    self._schedule(working.model_copy(deep=True), responder, self._delay_for(target), rule.id)
                    scheduled.append(responder.id)

        return RoutingExecution(
            rule_id=rule.id,
            message_id=message.id,
            delivered_to=delivered,
            scheduled_for=scheduled,
            success=bool(delivered or scheduled),
            errors=errors,
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )

    def resolve_targets(self, target: RoutingTarget, context: RoutingContext) -> list[Responder]:
        responders = list(context.responders)
        if target.type == TargetType.BROADCAST:
            return responders
        if target.type == TargetType.SINGLE:
            if target.responder_ids:
                for responder_id in target.responder_ids:
                    for responder in responders:
                        if responder.id == responder_id:
                            return [responder]
                return []
            if target.selector is not None:
                return list(target.selector(responders, context))[:1]
            return []
        if target.type == TargetType.MULTIPLE:
            if target.responder_ids:
                wanted = set(target.responder_ids)
                return [responder for responder in responders if responder.id in wanted]
            if target.selector is not None:
                return list(target.selector(responders, context))
            return []
        if target.type == TargetType.CONDITIONAL and target.selector is not None:
            return list(target.selector(responders, context))
        return []

    async def _route_default(self, message: AgentMessage, context: RoutingContext) -> RoutingExecution:
        started = time.perf_counter()
        responders = list(context.responders)
        if not responders:
            logger.warning("routing_no_target", message=message.id, type=message.type)
            return RoutingExecution(
                rule_id=DEFAULT_RULE_ID,
                message_id=message.id,
                success=False,
                degraded=True,
                errors=["no available responders for default routing"],
            )

        target = responders[0]
        logger.warning("routing_degraded", message=message.id, type=message.type, responder=target.id)
        try:
            await self._deliver(message.model_copy(deep=True), target)
        except RoutingError as exc:
            return RoutingExecution(
                rule_id=DEFAULT_RULE_ID,
                message_id=message.id,
                success=False,
                degraded=True,
                errors=[str(exc)],
                execution_time_ms=(time.perf_counter() - started) * 1000,
            )
        return RoutingExecution(
            rule_id=DEFAULT_RULE_ID,
            message_id=message.id,
            delivered_to=[target.id],
            success=True,
            degraded=True,
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )

    async def _deliver(self, message: AgentMessage, responder: Responder) -> None:
        handler = getattr(responder, "on_message", None)
        if handler is None:
            return
        try:
            await handler(message)
        except Exception as exc:
            raise RoutingError(f"delivery to {responder.id} failed: {exc}") from exc

    def _delay_for(self, target: RoutingTarget) -> float:
        if target.delay_ms is not None:
            return target.delay_ms / 1000
        if target.timing == DeliveryTiming.SCHEDULED:
            return self._settings.scheduled_delivery_ms / 1000
        return self._settings.delayed_delivery_ms / 1000

    def _schedule(self, message: AgentMessage, responder: Responder, delay: float, rule_id: str) -> None:
        async def deliver_later() -> None:
            await asyncio.sleep(delay)
            try:
                await self._deliver(message, responder)
            except RoutingError as exc:
                record_routing_execution(rule=rule_id, success=False)
                logger.warning("routing_delayed_delivery_failed", rule=rule_id, responder=responder.id, error=str(exc))

        task = asyncio.create_task(deliver_later())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _record(self, execution: RoutingExecution) -> None:
        self._history.append(execution)
        record_routing_execution(rule=execution.rule_id, success=execution.success)

    async def enqueue(self, message: AgentMessage, context: RoutingContext) -> None:
        """Queue a message for best-effort delivery by the background worker."""
        await self.start()
        assert self._queue is not None
        await self._queue.put(_QueuedMessage(message=message, context=context))
        logger.debug("routing_message_enqueued", message=message.id, queue_size=self._queue.qsize())

    async def _consumer(self) -> None:
        assert self._queue is not None
        pacing = self._settings.queue_pacing_ms / 1000
        while True:
            item = await self._queue.get()
            try:
                executions = await self.route(item.message, item.context)
                failed = any(not execution.success and not execution.dropped for execution in executions)
                if failed and item.requeues < self._settings.queue_max_requeues:
                    item.requeues += 1
                    await self._queue.put(item)
                    logger.info("routing_message_requeued", message=item.message.id, requeues=item.requeues)
            except Exception as exc:  # pragma: no cover - log unexpected routing errors
                logger.exception("routing_queue_failed", message=item.message.id, error=str(exc))
            finally:
                self._queue.task_done()
            if pacing > 0:
                await asyncio.sleep(pacing)

    async def start(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consumer())

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def drain(self) -> None:
        """Wait for queued messages and pending delayed deliveries."""
        await self.join()
        if self._timers:
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    async def stop(self) -> None:
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
            self._consumer_task = None

    async def aclose(self) -> None:
        await self.stop()
        for task in list(self._timers):
            task.cancel()
        if self._timers:
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["MessageRouter"]:
        await self.start()
        try:
            yield self
        finally:
            await self.aclose()

    def stats(self) -> dict[str, Any]:
        history = list(self._history)
        total = len(history)
        successes = sum(1 for execution in history if execution.success)
        return {
            "total_rules": len(self._rules),
            "total_executions": total,
            "success_rate": round(successes / total, 4) if total else 0.0,
            "average_execution_time_ms": (
                round(sum(execution.execution_time_ms for execution in history) / total, 4) if total else 0.0
            ),
            "degraded_deliveries": sum(1 for execution in history if execution.degraded),
            "pending_deliveries": len(self._timers),
        }


__all__ = [
    "DEFAULT_RULE_ID",
    "MessageRouter",
    "RoutingCondition",
    "RoutingContext",
    "RoutingRule",
    "RoutingTarget",
    "default_routing_rules",
    "evaluate_condition",
]
