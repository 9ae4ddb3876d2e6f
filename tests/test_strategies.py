from __future__ import annotations

from chorus.orchestration.strategies import (
    AdaptiveDynamicStrategy,
    CollaborativeStrategy,
    EfficiencyOptimizedStrategy,
    EmotionDrivenStrategy,
    ParallelStrategy,
    SequentialStrategy,
    candidate_suggestions,
    default_scheduling_strategies,
)
from chorus.schemas.plan import ConditionType, ExecutionMode
from chorus.schemas.scene import SceneType
from tests.helpers.stubs import StubResponder, make_scene


def _pool(*ids: str) -> list[StubResponder]:
    return [StubResponder(responder_id) for responder_id in ids]


def test_candidates_follow_priority_and_ignore_unavailable_responders():
    scene = make_scene(participants=[("ghost", "supporter", 0.95), ("b", "supporter", 0.4), ("a", "supporter", 0.9)])

    candidates = candidate_suggestions(scene, _pool("a", "b"))

    assert [item.responder_id for item in candidates] == ["a", "b"]


def test_candidates_fall_back_to_pool_order():
    candidates = candidate_suggestions(make_scene(), _pool("x", "y", "z"))

    assert [item.responder_id for item in candidates] == ["x", "y", "z"]
    assert candidates[0].priority >= candidates[-1].priority


def test_default_catalog_registration_order():
    names = [strategy.name for strategy in default_scheduling_strategies()]

    assert names == [
        "sequential",
        "parallel",
        "adaptive_dynamic",
        "emotion_driven",
        "collaborative",
        "efficiency_optimized",
    ]


def test_sequential_plan_caps_responders_and_scales_timeout():
    plan = SequentialStrategy().create_plan(make_scene(), _pool("a", "b", "c", "d", "e"))

    phase = plan.phases[0]
    assert len(phase.agents) == 4
    assert phase.timeout_ms == 20_000
    assert phase.mode == ExecutionMode.SEQUENTIAL


def test_parallel_plan_runs_three_at_once():
    plan = ParallelStrategy().create_plan(make_scene(), _pool("a", "b", "c", "d"))

    assert plan.phases[0].mode == ExecutionMode.PARALLEL
    assert plan.responder_ids() == ["a", "b", "c"]


def test_adaptive_plan_gates_supporters_on_primary_phase():
    scene = make_scene(
        confidence=0.9,
        participants=[("lead", "primary_responder", 0.9), ("helper", "supporter", 0.7), ("extra", "supporter", 0.5)],
    )

    plan = AdaptiveDynamicStrategy().create_plan(scene, _pool("lead", "helper", "extra"))

    primary, supportive = plan.phases
    assert primary.name == "primary_response"
    assert primary.mode == ExecutionMode.SEQUENTIAL
    assert supportive.dependencies == ["primary_response"]
    assert supportive.conditions[0].type == ConditionType.SCENE_CONFIDENCE
    assert [agent.responder_id for agent in supportive.agents] == ["helper", "extra"]


def test_adaptive_plan_without_roles_uses_ranked_candidates():
    plan = AdaptiveDynamicStrategy().create_plan(make_scene(confidence=0.9), _pool("a", "b", "c", "d"))

    assert [agent.responder_id for agent in plan.phases[0].agents] == ["a"]
    assert [agent.responder_id for agent in plan.phases[1].agents] == ["b", "c"]


def test_emotion_strategy_prefers_empathetic_roles():
    scene = make_scene(
        scene_type=SceneType.EMOTIONAL_SUPPORT,
        participants=[("joker", "comedian", 0.9), ("listener", "emotional_support", 0.6)],
    )

    plan = EmotionDrivenStrategy().create_plan(scene, _pool("joker", "listener"))

    assert plan.responder_ids() == ["listener"]
    assert plan.phases[0].agents[0].expected_role == "emotional_supporter"


def test_collaborative_synthesis_follows_generation():
    scene = make_scene(scene_type=SceneType.CREATIVE_BRAINSTORM)

    plan = CollaborativeStrategy().create_plan(scene, _pool("a", "b", "c", "d"))

    generation, synthesis = plan.phases
    assert generation.mode == ExecutionMode.PARALLEL
    assert len(generation.agents) == 3
    assert synthesis.mode == ExecutionMode.SEQUENTIAL
    assert synthesis.agents[0].responder_id == "a"


def test_efficiency_applies_to_quick_answers():
    strategy = EfficiencyOptimizedStrategy()

    assert strategy.is_applicable(make_scene(expectation_type="quick_answer"), _pool("a"))
    assert not strategy.is_applicable(make_scene(urgency=0.5), _pool("a"))
