from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_incrementing,
    wait_none,
)

from ..agents.base import Responder, ResponderInput
from ..core.config import ExecutionSettings
from ..core.errors import ResponderInvocationError
from ..core.logging import get_logger
from ..core.metrics import increment_phase_skip, increment_responder_retry, record_responder_invocation
from ..schemas.plan import (
    AgentExecution,
    BackoffKind,
    ConditionType,
    ExecutionMode,
    ExecutionPhase,
    ExecutionPlan,
    RetryPolicy,
)
from ..schemas.results import AgentResult, ExecutionMetrics
from ..schemas.scene import SceneAnalysis
from .enums import EventType, SkipReason

logger = get_logger(name=__name__)

PhaseEventSink = Callable[[EventType, dict[str, Any]], Awaitable[None]]
ConditionalPredicate = Callable[[AgentExecution, SceneAnalysis], bool]


def default_conditional_predicate(agent: AgentExecution, scene: SceneAnalysis) -> bool:
    """Under very high urgency only rapid responders take part in conditional phases."""
    return not (scene.user_intent.urgency_level > 0.8 and agent.expected_role != "rapid_responder")


@dataclass(slots=True)
class TurnInput:
    """Per-turn context the executor passes through to responders."""

    conversation_id: str
    user_message: str
    scene: SceneAnalysis
    responders: Mapping[str, Responder]
    history: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


def _wait_strategy(policy: RetryPolicy):
    seconds = policy.backoff_ms / 1000
    if seconds <= 0:
        return wait_none()
    if policy.backoff == BackoffKind.LINEAR:
        return wait_incrementing(start=seconds, increment=seconds)
    if policy.backoff == BackoffKind.EXPONENTIAL:
        return wait_exponential(multiplier=seconds)
    return wait_fixed(seconds)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class PhaseExecutor:
    """Walk an execution plan phase by phase.

    Responder failures never abort a phase or the plan: every invocation ends
    in an ``AgentResult`` and the plan walk returns whatever accumulated.
    """

    def __init__(
        self,
        *,
        settings: ExecutionSettings | None = None,
        conditional_predicate: ConditionalPredicate | None = None,
    ) -> None:
        self._settings = settings or ExecutionSettings()
        self._predicate = conditional_predicate or default_conditional_predicate

    async def run_plan(
        self,
        plan: ExecutionPlan,
        turn: TurnInput,
        *,
        on_event: PhaseEventSink | None = None,
    ) -> list[AgentResult]:
        results: list[AgentResult] = []
        successful_phases: set[str] = set()

        for phase in plan.phases:
            if turn.cancelled:
                logger.info("plan_cancelled", plan=plan.strategy_used, before_phase=phase.name)
                break

            reason = self._skip_reason(phase, turn, successful_phases)
            if reason is not None:
                increment_phase_skip(reason=reason.value)
                logger.info("phase_skipped", phase=phase.name, reason=reason.value)
                await self._emit(on_event, EventType.PHASE_SKIPPED, {"phase": phase.name, "reason": reason.value})
                continue

            await self._emit(
                on_event,
                EventType.PHASE_STARTED,
                {"phase": phase.name, "mode": phase.mode.value, "responders": [a.responder_id for a in phase.agents]},
            )
            started = time.perf_counter()
            phase_results = await self.run_phase(phase, turn, on_event=on_event)
            results.extend(phase_results)
            succeeded = sum(1 for result in phase_results if result.success)
            if succeeded:
                successful_phases.add(phase.name)
            await self._emit(
                on_event,
                EventType.PHASE_COMPLETE,
                {
                    "phase": phase.name,
                    "results": len(phase_results),
                    "successful": succeeded,
                    "execution_time_ms": round(_elapsed_ms(started), 2),
                },
            )
        return results

    async def run_phase(
        self,
        phase: ExecutionPhase,
        turn: TurnInput,
        *,
        on_event: PhaseEventSink | None = None,
    ) -> list[AgentResult]:
        if phase.mode == ExecutionMode.PARALLEL:
            return await self._run_parallel(phase, turn, on_event)
        return await self._run_serial(phase, turn, on_event)

    def _skip_reason(
        self,
        phase: ExecutionPhase,
        turn: TurnInput,
        successful_phases: set[str],
    ) -> SkipReason | None:
        if not phase.agents:
            return SkipReason.EMPTY_PHASE
        for condition in phase.conditions:
            if condition.type == ConditionType.SCENE_CONFIDENCE:
                value = turn.scene.confidence
            else:
                value = float(len(turn.responders))
            if value < condition.threshold:
                return SkipReason.CONDITION_UNMET
        if any(dependency not in successful_phases for dependency in phase.dependencies):
            return SkipReason.DEPENDENCY_UNMET
        return None

    async def _run_parallel(
        self,
        phase: ExecutionPhase,
        turn: TurnInput,
        on_event: PhaseEventSink | None,
    ) -> list[AgentResult]:
        semaphore = asyncio.Semaphore(self._settings.max_concurrency)

        async def bounded(agent: AgentExecution) -> AgentResult:
            async with semaphore:
                return await self.invoke(agent, turn, phase=phase.name)

        tasks = [asyncio.create_task(bounded(agent)) for agent in phase.agents]
        _, pending = await asyncio.wait(tasks, timeout=phase.timeout_ms / 1000)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("phase_timeout", phase=phase.name, abandoned=len(pending), timeout_ms=phase.timeout_ms)

        results: list[AgentResult] = []
        for agent, task in zip(phase.agents, tasks):
            if task in pending or task.cancelled():
                result = AgentResult.failure(
                    agent.responder_id,
                    f"phase {phase.name} timed out after {phase.timeout_ms} ms",
                    kind="phase_timeout",
                    role=agent.expected_role,
                    execution_time_ms=float(phase.timeout_ms),
                    attempts=0,
                )
                record_responder_invocation(
                    responder=agent.responder_id, outcome="timeout", latency=phase.timeout_ms / 1000
                )
            else:
                result = task.result()
            results.append(result)
            await self._emit_result(on_event, phase, result)
        return results

    async def _run_serial(
        self,
        phase: ExecutionPhase,
        turn: TurnInput,
        on_event: PhaseEventSink | None,
    ) -> list[AgentResult]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + phase.timeout_ms / 1000
        results: list[AgentResult] = []

        for index, agent in enumerate(phase.agents):
            if phase.mode == ExecutionMode.CONDITIONAL and not self._predicate(agent, turn.scene):
                logger.debug("responder_skipped", phase=phase.name, responder=agent.responder_id)
                continue

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "phase_timeout",
                    phase=phase.name,
                    abandoned=len(phase.agents) - index,
                    timeout_ms=phase.timeout_ms,
                )
                break

            previous = list(results) if phase.mode == ExecutionMode.PIPELINE else []
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    self.invoke(agent, turn, phase=phase.name, previous_results=previous),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                result = AgentResult.failure(
                    agent.responder_id,
                    f"phase {phase.name} timed out after {phase.timeout_ms} ms",
                    kind="phase_timeout",
                    role=agent.expected_role,
                    execution_time_ms=_elapsed_ms(started),
                )
                record_responder_invocation(
                    responder=agent.responder_id, outcome="timeout", latency=time.perf_counter() - started
                )
                results.append(result)
                await self._emit_result(on_event, phase, result)
                logger.warning(
                    "phase_timeout",
                    phase=phase.name,
                    abandoned=len(phase.agents) - index,
                    timeout_ms=phase.timeout_ms,
                )
                break

            results.append(result)
            await self._emit_result(on_event, phase, result)
        return results

    async def invoke(
        self,
        agent: AgentExecution,
        turn: TurnInput,
        *,
        phase: str | None = None,
        previous_results: Sequence[AgentResult] = (),
    ) -> AgentResult:
        """Invoke one responder under its retry policy; never raises for responder errors."""
        responder = turn.responders.get(agent.responder_id)
        if responder is None:
            logger.warning("responder_unavailable", responder=agent.responder_id, phase=phase)
            record_responder_invocation(responder=agent.responder_id, outcome="unavailable", latency=0.0)
            return AgentResult.failure(
                agent.responder_id,
                f"responder {agent.responder_id} is not in the pool",
                kind="responder_unavailable",
                role=agent.expected_role,
                attempts=0,
            )

        policy = agent.retry_policy or RetryPolicy()

        def should_retry(exc: BaseException) -> bool:
            return isinstance(exc, ResponderInvocationError) and policy.is_retryable(exc.kind, exc.message)

        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome is not None else None
            condition = getattr(error, "kind", "unknown")
            increment_responder_retry(responder=agent.responder_id, condition=condition)
            logger.info(
                "responder_retry",
                responder=agent.responder_id,
                attempt=state.attempt_number,
                condition=condition,
            )

        started = time.perf_counter()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=_wait_strategy(policy),
                retry=retry_if_exception(should_retry),
                before_sleep=before_sleep,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._call(responder, agent, turn, phase, previous_results)
        except ResponderInvocationError as exc:
            latency = time.perf_counter() - started
            record_responder_invocation(responder=agent.responder_id, outcome="failure", latency=latency)
            logger.warning(
                "responder_failed",
                responder=agent.responder_id,
                phase=phase,
                kind=exc.kind,
                error=exc.message,
                attempts=attempts,
            )
            return AgentResult.failure(
                agent.responder_id,
                exc.message,
                kind=exc.kind,
                role=agent.expected_role,
                execution_time_ms=latency * 1000,
                attempts=attempts,
            )

        latency = time.perf_counter() - started
        record_responder_invocation(responder=agent.responder_id, outcome="success", latency=latency)
        return result.model_copy(
            update={
                "responder_id": result.responder_id or agent.responder_id,
                "role": result.role or agent.expected_role,
                "metrics": ExecutionMetrics(execution_time_ms=latency * 1000, attempts=attempts),
            }
        )

    async def _call(
        self,
        responder: Responder,
        agent: AgentExecution,
        turn: TurnInput,
        phase: str | None,
        previous_results: Sequence[AgentResult],
    ) -> AgentResult:
        try:
            payload = ResponderInput(
                conversation_id=turn.conversation_id,
                user_message=turn.user_message,
                history=[dict(entry) for entry in turn.history],
                scene=turn.scene,
                expected_role=agent.expected_role,
                phase=phase,
                previous_results=list(previous_results),
                metadata=dict(turn.metadata),
            )
            result = await responder.execute(payload)
        except ResponderInvocationError:
            raise
        except asyncio.TimeoutError as exc:
            raise ResponderInvocationError("llm_timeout", str(exc) or "responder timed out") from exc
        except ValueError as exc:
            raise ResponderInvocationError("parsing_error", str(exc) or "unparseable responder output") from exc
        except Exception as exc:
            raise ResponderInvocationError("execution_error", str(exc) or type(exc).__name__) from exc

        if not isinstance(result, AgentResult):
            raise ResponderInvocationError("parsing_error", f"unexpected result type {type(result).__name__}")
        if not result.success:
            raise ResponderInvocationError(
                result.error_kind or "responder_failure",
                result.error or "responder reported failure",
            )
        return result

    async def _emit_result(
        self,
        on_event: PhaseEventSink | None,
        phase: ExecutionPhase,
        result: AgentResult,
    ) -> None:
        await self._emit(
            on_event,
            EventType.RESPONDER_COMPLETE,
            {
                "phase": phase.name,
                "responder": result.responder_id,
                "success": result.success,
                "error": result.error,
                "error_kind": result.error_kind,
                "execution_time_ms": round(result.metrics.execution_time_ms, 2),
            },
        )

    @staticmethod
    async def _emit(on_event: PhaseEventSink | None, event: EventType, data: dict[str, Any]) -> None:
        if on_event is None:
            return
        try:
            await on_event(event, data)
        except Exception:
            logger.warning("phase_event_failed", event_type=event.value, exc_info=True)


__all__ = [
    "ConditionalPredicate",
    "PhaseEventSink",
    "PhaseExecutor",
    "TurnInput",
    "default_conditional_predicate",
]
