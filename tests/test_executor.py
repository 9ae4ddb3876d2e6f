from __future__ import annotations

import asyncio

import pytest

from chorus.orchestration.enums import EventType
from chorus.orchestration.executor import PhaseExecutor, TurnInput
from chorus.schemas.plan import (
    AgentExecution,
    ConditionType,
    ExecutionCondition,
    ExecutionMode,
    ExecutionPhase,
    ExecutionPlan,
    RetryPolicy,
)
from chorus.schemas.results import AgentResult
from tests.helpers.stubs import FailingResponder, StubResponder, make_scene


class OrderedResponder(StubResponder):
    def __init__(self, responder_id: str, journal: list[str], **kwargs) -> None:
        super().__init__(responder_id, **kwargs)
        self.journal = journal

    async def execute(self, payload):
        self.journal.append(f"start:{self.id}")
        result = await super().execute(payload)
        self.journal.append(f"end:{self.id}")
        return result


class ReportedFailureResponder(StubResponder):
    async def execute(self, payload):
        self.calls.append(payload)
        return AgentResult.failure(self.id, "model refused", kind="content_filter")


def _turn(*responders, scene=None, cancel_event=None) -> TurnInput:
    return TurnInput(
        conversation_id="conv-1",
        user_message="hello there",
        scene=scene or make_scene(),
        responders={responder.id: responder for responder in responders},
        cancel_event=cancel_event,
    )


def _phase(name: str, *ids: str, mode=ExecutionMode.SEQUENTIAL, **kwargs) -> ExecutionPhase:
    return ExecutionPhase(
        name=name,
        agents=[AgentExecution(responder_id=responder_id) for responder_id in ids],
        mode=mode,
        **kwargs,
    )


def _plan(*phases: ExecutionPhase) -> ExecutionPlan:
    return ExecutionPlan(strategy_used="test", phases=list(phases))


@pytest.mark.asyncio
async def test_sequential_phase_runs_in_listed_order():
    journal: list[str] = []
    first = OrderedResponder("first", journal, delay=0.01)
    second = OrderedResponder("second", journal)

    results = await PhaseExecutor().run_plan(_plan(_phase("talk", "first", "second")), _turn(first, second))

    assert [result.responder_id for result in results] == ["first", "second"]
    assert journal == ["start:first", "end:first", "start:second", "end:second"]


@pytest.mark.asyncio
async def test_parallel_failure_does_not_affect_other_responders():
    healthy_a = StubResponder("a")
    broken = FailingResponder("broken")
    healthy_b = StubResponder("b")
    plan = _plan(_phase("burst", "a", "broken", "b", mode=ExecutionMode.PARALLEL))

    results = await PhaseExecutor().run_plan(plan, _turn(healthy_a, broken, healthy_b))

    assert len(results) == 3
    assert [result.success for result in results] == [True, False, True]
    assert results[1].error_kind == "execution_error"
    assert len(results) <= plan.responder_slots


@pytest.mark.asyncio
async def test_pipeline_passes_previous_results():
    first = StubResponder("first", content="draft answer")
    second = StubResponder("second")

    await PhaseExecutor().run_plan(
        _plan(_phase("refine", "first", "second", mode=ExecutionMode.PIPELINE)),
        _turn(first, second),
    )

    assert first.calls[0].previous_results == []
    assert [result.content for result in second.calls[0].previous_results] == ["draft answer"]


@pytest.mark.asyncio
async def test_conditional_phase_skips_non_rapid_responders_under_urgency():
    rapid = StubResponder("rapid")
    slow = StubResponder("slow")
    phase = ExecutionPhase(
        name="maybe",
        agents=[
            AgentExecution(responder_id="rapid", expected_role="rapid_responder"),
            AgentExecution(responder_id="slow", expected_role="participant"),
        ],
        mode=ExecutionMode.CONDITIONAL,
    )

    results = await PhaseExecutor().run_plan(_plan(phase), _turn(rapid, slow, scene=make_scene(urgency=0.9)))

    assert [result.responder_id for result in results] == ["rapid"]
    assert slow.calls == []


@pytest.mark.asyncio
async def test_unmet_condition_skips_phase_and_continues():
    events: list[tuple[EventType, dict]] = []

    async def sink(event, data):
        events.append((event, data))

    gated = _phase(
        "gated",
        "a",
        conditions=[ExecutionCondition(type=ConditionType.SCENE_CONFIDENCE, threshold=0.8)],
    )
    plan = _plan(gated, _phase("open", "b"))

    results = await PhaseExecutor().run_plan(
        plan, _turn(StubResponder("a"), StubResponder("b"), scene=make_scene(confidence=0.5)), on_event=sink
    )

    assert [result.responder_id for result in results] == ["b"]
    assert (EventType.PHASE_SKIPPED, {"phase": "gated", "reason": "condition_unmet"}) in events


@pytest.mark.asyncio
async def test_pool_size_condition_uses_turn_responders():
    plan = _plan(
        _phase(
            "crowd",
            "a",
            conditions=[ExecutionCondition(type=ConditionType.RESPONDER_POOL_SIZE, threshold=3)],
        )
    )

    results = await PhaseExecutor().run_plan(plan, _turn(StubResponder("a"), StubResponder("b")))

    assert results == []


@pytest.mark.asyncio
async def test_dependency_without_success_skips_phase():
    broken = FailingResponder("broken")
    follower = StubResponder("follower")
    plan = _plan(_phase("lead", "broken"), _phase("follow", "follower", dependencies=["lead"]))

    results = await PhaseExecutor().run_plan(plan, _turn(broken, follower))

    assert [result.responder_id for result in results] == ["broken"]
    assert follower.calls == []


@pytest.mark.asyncio
async def test_retryable_timeout_is_retried():
    flaky = FailingResponder("flaky", error=asyncio.TimeoutError("slow model"), failures=1)
    agent = AgentExecution(
        responder_id="flaky",
        retry_policy=RetryPolicy(max_attempts=2, backoff_ms=0, retryable_conditions=["llm_timeout"]),
    )

    result = await PhaseExecutor().invoke(agent, _turn(flaky))

    assert result.success is True
    assert result.metrics.attempts == 2
    assert len(flaky.calls) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_fails_after_one_attempt():
    broken = FailingResponder("broken", error=ValueError("not json"))
    agent = AgentExecution(
        responder_id="broken",
        retry_policy=RetryPolicy(max_attempts=3, retryable_conditions=["llm_timeout"]),
    )

    result = await PhaseExecutor().invoke(agent, _turn(broken))

    assert result.success is False
    assert result.error_kind == "parsing_error"
    assert len(broken.calls) == 1


@pytest.mark.asyncio
async def test_reported_failure_keeps_its_kind():
    refusing = ReportedFailureResponder("refusing")

    result = await PhaseExecutor().invoke(AgentExecution(responder_id="refusing"), _turn(refusing))

    assert result.success is False
    assert result.error_kind == "content_filter"
    assert result.error == "model refused"


@pytest.mark.asyncio
async def test_missing_responder_is_recorded_as_failure():
    result = await PhaseExecutor().invoke(AgentExecution(responder_id="ghost"), _turn(StubResponder("a")))

    assert result.success is False
    assert result.error_kind == "responder_unavailable"
    assert result.responder_id == "ghost"


@pytest.mark.asyncio
async def test_parallel_phase_timeout_abandons_slow_responders():
    fast = StubResponder("fast")
    slow = StubResponder("slow", delay=1.0)
    plan = _plan(_phase("burst", "fast", "slow", mode=ExecutionMode.PARALLEL, timeout_ms=50))

    results = await PhaseExecutor().run_plan(plan, _turn(fast, slow))

    assert results[0].success is True
    assert results[1].success is False
    assert results[1].error_kind == "phase_timeout"


@pytest.mark.asyncio
async def test_sequential_phase_timeout_stops_the_phase():
    slow = StubResponder("slow", delay=1.0)
    never = StubResponder("never")
    plan = _plan(_phase("talk", "slow", "never", timeout_ms=50))

    results = await PhaseExecutor().run_plan(plan, _turn(slow, never))

    assert len(results) == 1
    assert results[0].error_kind == "phase_timeout"
    assert never.calls == []


@pytest.mark.asyncio
async def test_cancellation_is_checked_between_phases():
    cancel = asyncio.Event()

    async def sink(event, data):
        if event == EventType.PHASE_COMPLETE:
            cancel.set()

    plan = _plan(_phase("one", "a"), _phase("two", "b"))
    second = StubResponder("b")

    results = await PhaseExecutor().run_plan(plan, _turn(StubResponder("a"), second, cancel_event=cancel), on_event=sink)

    assert [result.responder_id for result in results] == ["a"]
    assert second.calls == []


@pytest.mark.asyncio
async def test_failing_event_sink_does_not_break_execution():
    async def sink(event, data):
        raise RuntimeError("ui disconnected")

    results = await PhaseExecutor().run_plan(_plan(_phase("talk", "a")), _turn(StubResponder("a")), on_event=sink)

    assert [result.success for result in results] == [True]


@pytest.mark.asyncio
async def test_each_invocation_gets_its_own_input():
    a = StubResponder("a")
    b = StubResponder("b")

    await PhaseExecutor().run_plan(_plan(_phase("burst", "a", "b", mode=ExecutionMode.PARALLEL)), _turn(a, b))

    a.calls[0].metadata["touched"] = True
    assert "touched" not in b.calls[0].metadata
    assert a.calls[0].phase == "burst"
