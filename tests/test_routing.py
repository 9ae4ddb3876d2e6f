from __future__ import annotations

import pytest

from chorus.core.config import RoutingSettings
from chorus.orchestration.enums import (
    ConditionOperator,
    DeliveryTiming,
    MessageType,
    RoutingConditionType,
    TargetType,
)
from chorus.orchestration.routing import (
    DEFAULT_RULE_ID,
    MessageRouter,
    RoutingCondition,
    RoutingContext,
    RoutingRule,
    RoutingTarget,
    evaluate_condition,
)
from chorus.schemas.messages import AgentMessage, MessageMetadata
from tests.helpers.stubs import StubResponder, UnreachableResponder, make_scene


def _type_is(value: str) -> RoutingCondition:
    return RoutingCondition(type=RoutingConditionType.MESSAGE_TYPE, value=value)


def _to(*ids: str, timing: DeliveryTiming = DeliveryTiming.IMMEDIATE, delay_ms: int | None = None) -> RoutingTarget:
    kind = TargetType.SINGLE if len(ids) == 1 else TargetType.MULTIPLE
    return RoutingTarget(type=kind, responder_ids=ids, timing=timing, delay_ms=delay_ms)


def _context(*responders, scene=None) -> RoutingContext:
    return RoutingContext(conversation_id="conv-1", responders=list(responders), scene=scene)


@pytest.mark.asyncio
async def test_high_priority_rule_short_circuits_lower_rules():
    high_target = StubResponder("high")
    low_target = StubResponder("low")
    router = MessageRouter(
        [
            RoutingRule(id="low", priority=0.3, conditions=(_type_is("note"),), targets=(_to("low"),)),
            RoutingRule(id="high", priority=0.9, conditions=(_type_is("note"),), targets=(_to("high"),)),
        ],
        middleware={},
    )

    executions = await router.route(AgentMessage(type="note"), _context(high_target, low_target))

    assert [execution.rule_id for execution in executions] == ["high"]
    assert len(high_target.messages) == 1
    assert low_target.messages == []


@pytest.mark.asyncio
async def test_lower_priority_rules_run_when_no_short_circuit():
    a = StubResponder("a")
    b = StubResponder("b")
    router = MessageRouter(
        [
            RoutingRule(id="first", priority=0.7, conditions=(_type_is("note"),), targets=(_to("a"),)),
            RoutingRule(id="second", priority=0.5, conditions=(_type_is("note"),), targets=(_to("b"),)),
        ],
        middleware={},
    )

    executions = await router.route(AgentMessage(type="note"), _context(a, b))

    assert [execution.rule_id for execution in executions] == ["first", "second"]
    assert len(a.messages) == len(b.messages) == 1


@pytest.mark.asyncio
async def test_routing_same_message_twice_reaches_same_targets():
    responders = [StubResponder("a"), StubResponder("b"), StubResponder("c")]
    router = MessageRouter(
        [RoutingRule(id="fanout", priority=0.5, conditions=(_type_is("note"),), targets=(_to("a", "c"),))],
        middleware={},
    )
    message = AgentMessage(type="note", payload={"text": "hi"})
    context = _context(*responders)

    first = await router.route(message, context)
    second = await router.route(message, context)

    assert [execution.delivered_to for execution in first] == [execution.delivered_to for execution in second]
    assert first[0].delivered_to == ["a", "c"]
    assert message.payload == {"text": "hi"}


@pytest.mark.asyncio
async def test_unmatched_message_is_delivered_degraded():
    first = StubResponder("first")
    router = MessageRouter([], middleware={})

    [execution] = await router.route(AgentMessage(type="unknown"), _context(first, StubResponder("second")))

    assert execution.rule_id == DEFAULT_RULE_ID
    assert execution.degraded is True
    assert execution.delivered_to == ["first"]
    assert len(first.messages) == 1


@pytest.mark.asyncio
async def test_unmatched_message_without_responders_fails_softly():
    router = MessageRouter([], middleware={})

    [execution] = await router.route(AgentMessage(type="unknown"), _context())

    assert execution.success is False
    assert execution.degraded is True


@pytest.mark.asyncio
async def test_transformation_returning_none_drops_message_for_that_rule():
    dropped_target = StubResponder("dropped")
    fallback_target = StubResponder("kept")
    router = MessageRouter(
        [
            RoutingRule(
                id="dropping",
                priority=0.9,
                conditions=(_type_is("note"),),
                targets=(_to("dropped"),),
                transformations=(lambda message, context: None,),
            ),
            RoutingRule(id="plain", priority=0.2, conditions=(_type_is("note"),), targets=(_to("kept"),)),
        ],
        middleware={},
    )

    executions = await router.route(AgentMessage(type="note"), _context(dropped_target, fallback_target))

    assert executions[0].dropped is True
    assert executions[0].success is False
    assert dropped_target.messages == []
    assert len(fallback_target.messages) == 1


@pytest.mark.asyncio
async def test_transformation_changes_only_the_rule_copy():
    target = StubResponder("a")

    def shout(message, context):
        message.payload["text"] = message.payload["text"].upper()
        return message

    router = MessageRouter(
        [
            RoutingRule(
                id="shout",
                priority=0.5,
                conditions=(_type_is("note"),),
                targets=(_to("a"),),
                transformations=(shout,),
            )
        ],
        middleware={},
    )
    message = AgentMessage(type="note", payload={"text": "quiet"})

    await router.route(message, _context(target))

    assert target.messages[0].payload["text"] == "QUIET"
    assert message.payload["text"] == "quiet"


@pytest.mark.asyncio
async def test_failed_target_does_not_block_other_targets():
    offline = UnreachableResponder("offline")
    online = StubResponder("online")
    router = MessageRouter(
        [
            RoutingRule(
                id="everyone",
                priority=0.5,
                conditions=(_type_is("note"),),
                targets=(RoutingTarget(type=TargetType.BROADCAST),),
            )
        ],
        middleware={},
    )

    [execution] = await router.route(AgentMessage(type="note"), _context(offline, online))

    assert execution.success is True
    assert execution.delivered_to == ["online"]
    assert len(execution.errors) == 1
    assert "offline" in execution.errors[0]


@pytest.mark.asyncio
async def test_validation_middleware_failure_is_recorded():
    target = StubResponder("a")
    router = MessageRouter(
        [
            RoutingRule(
                id="validated",
                priority=0.5,
                conditions=(RoutingCondition(type=RoutingConditionType.CUSTOM, predicate=lambda m, c: True),),
                targets=(_to("a"),),
                middleware=("message_validation",),
            )
        ]
    )

    [execution] = await router.route(AgentMessage(type=""), _context(target))

    assert execution.success is False
    assert execution.errors
    assert target.messages == []


@pytest.mark.asyncio
async def test_delayed_delivery_is_scheduled_then_delivered():
    target = StubResponder("later")
    router = MessageRouter(
        [
            RoutingRule(
                id="delayed",
                priority=0.5,
                conditions=(_type_is("note"),),
                targets=(_to("later", timing=DeliveryTiming.DELAYED, delay_ms=10),),
            )
        ],
        middleware={},
    )

    [execution] = await router.route(AgentMessage(type="note"), _context(target))
    assert execution.scheduled_for == ["later"]
    assert execution.delivered_to == []
    assert target.messages == []

    await router.drain()

    assert len(target.messages) == 1
    await router.aclose()


@pytest.mark.asyncio
async def test_default_scene_broadcast_enriches_and_boosts_priority():
    responders = [StubResponder("a"), StubResponder("b")]
    scene = make_scene(urgency=0.9)
    router = MessageRouter()
    message = AgentMessage(
        type=MessageType.SCENE_ANALYSIS.value,
        metadata=MessageMetadata(priority=0.5),
    )

    [execution] = await router.route(message, _context(*responders, scene=scene))

    assert execution.rule_id == "scene_analysis_broadcast"
    assert execution.delivered_to == ["a", "b"]
    received = responders[0].messages[0]
    assert received.payload["scene_enrichment"]["scene_type"] == scene.scene_type.value
    assert received.metadata.priority == pytest.approx(0.75)
    assert message.metadata.priority == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_execution_request_goes_to_addressed_recipient():
    alice = StubResponder("alice")
    bob = StubResponder("bob")
    router = MessageRouter()
    message = AgentMessage(
        type=MessageType.EXECUTION_REQUEST.value,
        metadata=MessageMetadata(recipient="bob"),
    )

    [execution] = await router.route(message, _context(alice, bob))

    assert execution.delivered_to == ["bob"]
    assert alice.messages == []


def test_conditions_cover_payload_paths_capabilities_and_scene():
    scene = make_scene()
    context = _context(StubResponder("a", capabilities={"humor"}), scene=scene)
    message = AgentMessage(type="note", payload={"meta": {"score": 0.9}}, metadata=MessageMetadata(sender="planner"))

    assert evaluate_condition(
        RoutingCondition(
            type=RoutingConditionType.PAYLOAD_FIELD,
            operator=ConditionOperator.GREATER_THAN,
            path="meta.score",
            value=0.5,
        ),
        message,
        context,
    )
    assert evaluate_condition(RoutingCondition(type=RoutingConditionType.CAPABILITY, value="humor"), message, context)
    assert not evaluate_condition(RoutingCondition(type=RoutingConditionType.CAPABILITY, value="math"), message, context)
    assert evaluate_condition(
        RoutingCondition(type=RoutingConditionType.SCENE_TYPE, value=scene.scene_type.value), message, context
    )
    assert evaluate_condition(
        RoutingCondition(type=RoutingConditionType.SENDER, operator=ConditionOperator.IN, value=("planner", "system")),
        message,
        context,
    )
    assert evaluate_condition(
        RoutingCondition(type=RoutingConditionType.MESSAGE_TYPE, operator=ConditionOperator.MATCHES, value="^no"),
        message,
        context,
    )


def test_add_rule_replaces_by_id_and_remove_reports_presence():
    router = MessageRouter([], middleware={})
    router.add_rule(RoutingRule(id="r", priority=0.2))
    router.add_rule(RoutingRule(id="r", priority=0.6))

    assert [rule.priority for rule in router.rules] == [0.6]
    assert router.remove_rule("r") is True
    assert router.remove_rule("r") is False


@pytest.mark.asyncio
async def test_queue_requeues_failed_messages_a_bounded_number_of_times():
    offline = UnreachableResponder("offline")
    router = MessageRouter(
        [RoutingRule(id="doomed", priority=0.5, conditions=(_type_is("note"),), targets=(_to("offline"),))],
        middleware={},
        settings=RoutingSettings(queue_max_requeues=3, queue_pacing_ms=0),
    )

    async with router.lifecycle():
        await router.enqueue(AgentMessage(type="note"), _context(offline))
        await router.join()

    attempts = [execution for execution in router.history if execution.rule_id == "doomed"]
    assert len(attempts) == 4
    assert all(not execution.success for execution in attempts)


@pytest.mark.asyncio
async def test_stats_summarize_history():
    router = MessageRouter([], middleware={})
    await router.route(AgentMessage(type="x"), _context(StubResponder("a")))
    await router.route(AgentMessage(type="x"), _context())

    stats = router.stats()

    assert stats["total_rules"] == 0
    assert stats["total_executions"] == 2
    assert stats["success_rate"] == pytest.approx(0.5)
    assert stats["degraded_deliveries"] == 2
