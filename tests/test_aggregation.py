from __future__ import annotations

import pytest

from chorus.orchestration.aggregation import (
    EMPTY_STRATEGY,
    FALLBACK_STRATEGY,
    AggregationContext,
    ResultAggregator,
    ThematicAggregation,
)
from chorus.schemas.results import (
    AgentResult,
    AggregatedResult,
    AggregationMetadata,
    ChatResponse,
    QualityBreakdown,
)
from chorus.schemas.scene import Emotion, SceneType
from tests.helpers.stubs import make_scene, ok_result


def _context(user_message: str = "what should I do today", **scene_kwargs) -> AggregationContext:
    return AggregationContext(conversation_id="conv-1", user_message=user_message, scene=make_scene(**scene_kwargs))


class ExplodingAggregation:
    name = "exploding"
    description = "Claims every result set and then fails."

    def is_applicable(self, responses, context) -> bool:
        return True

    def claims(self, responses, context) -> bool:
        return True

    def fitness(self, responses, context) -> float:
        return 1.0

    def aggregate(self, responses, context):
        raise RuntimeError("merge failed")


def test_no_results_yield_empty_result():
    result = ResultAggregator().aggregate([], _context())

    assert result.success is False
    assert result.quality_score == 0.0
    assert result.final_responses == []
    assert result.metadata.strategy == EMPTY_STRATEGY


def test_only_failed_or_blank_results_yield_empty_result():
    results = [
        AgentResult.failure("a", "boom"),
        ok_result("b", "   "),
    ]

    result = ResultAggregator().aggregate(results, _context())

    assert result.success is False
    assert result.quality_score == 0.0
    assert result.metadata.total_responders == 2


def test_near_identical_results_select_consensus():
    base = "You should take a short walk outside and then rest for a while today"
    results = [
        ok_result("a", base),
        ok_result("b", base + " please"),
        ok_result("c", base + " friend"),
        ok_result("d", "Honestly " + base),
    ]

    result = ResultAggregator().aggregate(results, _context())

    assert result.metadata.strategy == "consensus"
    assert result.metadata.extras["selection"] == "override"
    assert 1 <= len(result.final_responses) <= 3


def test_quality_score_is_weighted_sum_of_breakdown():
    results = [
        ok_result("a", "Try a walk in the park today, it helps clear your head"),
        ok_result("b", "Maybe call a friend and plan something fun for today"),
        ok_result("c", "Reading a good book could make today calmer"),
    ]

    result = ResultAggregator().aggregate(results, _context())

    breakdown = result.metadata.quality_breakdown
    for dimension in QualityBreakdown.WEIGHTS:
        assert 0.0 <= getattr(breakdown, dimension) <= 1.0
    expected = sum(getattr(breakdown, name) * weight for name, weight in QualityBreakdown.WEIGHTS.items())
    assert result.quality_score == pytest.approx(expected)


def test_emotional_scene_selects_emotional_strategy():
    results = [
        ok_result("a", "I am so sorry you feel sad, that sounds awful"),
        ok_result("b", "Great news, that is wonderful and awesome"),
    ]

    result = ResultAggregator().aggregate(
        results,
        _context("I feel sad and lonely", scene_type=SceneType.EMOTIONAL_SUPPORT, emotion=Emotion.NEGATIVE),
    )

    assert result.metadata.strategy == "emotional"
    assert [response.responder_id for response in result.final_responses] == ["a"]


def test_creative_scene_selects_thematic_strategy():
    results = [
        ok_result("a", "Imagine a story about a dragon who invents new ideas each morning"),
        ok_result("b", "Some practical steps every morning"),
    ]

    result = ResultAggregator().aggregate(
        results,
        _context("brainstorm some morning ideas", scene_type=SceneType.CREATIVE_BRAINSTORM),
    )

    assert result.metadata.strategy == "thematic"
    assert {response.responder_id for response in result.final_responses} == {"a", "b"}


def test_thematic_keeps_most_confident_response_per_theme():
    responses = [
        ChatResponse(responder_id="low", content="Here is a practical plan with steps", confidence=0.4),
        ChatResponse(responder_id="high", content="My practical method is simple", confidence=0.9),
        ChatResponse(responder_id="data", content="The data suggests a different cause", confidence=0.5),
    ]

    output = ThematicAggregation().aggregate(responses, _context(scene_type=SceneType.PROBLEM_SOLVING))

    assert [response.responder_id for response in output.responses] == ["high", "data"]


def test_two_casual_results_use_sequential_strategy():
    results = [ok_result("a", "Sounds good to me"), ok_result("b", "Same here, let's go")]

    result = ResultAggregator().aggregate(results, _context())

    assert result.metadata.strategy == "sequential"
    assert result.metadata.extras["selection"] == "scored"


def test_single_problem_solving_result_uses_quality_based_strategy():
    results = [ok_result("a", "Restart the router and check the cable")]

    result = ResultAggregator().aggregate(results, _context(scene_type=SceneType.PROBLEM_SOLVING))

    assert result.metadata.strategy == "quality_based"


def test_low_relevance_triggers_single_repair_pass():
    results = [
        ok_result("bike", "To fix your bicycle chain, first clean the chain"),
        ok_result("pizza", "Pizza is delicious tonight honestly"),
    ]

    result = ResultAggregator().aggregate(results, _context("how do I fix my bicycle chain"))

    assert result.metadata.repaired is True
    assert [response.responder_id for response in result.final_responses] == ["bike"]
    assert result.quality_score == pytest.approx(result.metadata.quality_breakdown.overall())


def test_failing_strategy_falls_back_to_uniform_prior():
    results = [ok_result("a", "One answer"), ok_result("b", "Another answer")]

    result = ResultAggregator([ExplodingAggregation()]).aggregate(results, _context())

    assert result.success is True
    assert result.metadata.strategy == FALLBACK_STRATEGY
    assert len(result.final_responses) == 2
    assert result.quality_score == pytest.approx(result.metadata.quality_breakdown.overall())


def test_recommendations_flag_failed_responders():
    results = [ok_result("a", "Here is an answer"), AgentResult.failure("b", "timeout", kind="llm_timeout")]

    result = ResultAggregator().aggregate(results, _context())

    assert result.metadata.successful_responders == 1
    assert result.metadata.total_responders == 2
    assert any("success rate" in note for note in result.recommendations)


def test_next_actions_are_ranked_by_priority():
    aggregator = ResultAggregator()
    context = _context(urgency=0.9)

    def _result(score: float) -> AggregatedResult:
        return AggregatedResult(success=True, quality_score=score, metadata=AggregationMetadata(strategy="manual"))

    high = aggregator.next_actions(_result(0.85), context)
    low = aggregator.next_actions(_result(0.4), context)

    assert [action.action for action in high] == ["completion", "clarification"]
    assert [action.action for action in low] == ["clarification", "escalation"]
    assert [action.action for action in aggregator.next_actions(_result(0.65), _context())] == ["follow_up"]


@pytest.mark.parametrize(("score", "expected"), [(0.6, "follow_up"), (0.59, "escalation")])
def test_escalation_starts_below_threshold(score, expected):
    result = AggregatedResult(success=True, quality_score=score, metadata=AggregationMetadata(strategy="manual"))

    [action] = ResultAggregator().next_actions(result, _context())

    assert action.action == expected


def test_history_feeds_strategy_scores():
    aggregator = ResultAggregator()
    assert aggregator.history_score("sequential") == pytest.approx(0.5)

    result = aggregator.aggregate([ok_result("a", "Sounds good"), ok_result("b", "Agreed")], _context())

    assert aggregator.history_score("sequential") == pytest.approx(result.quality_score)
    assert aggregator.status()["total_aggregations"] == 1


def test_unregister_strategy():
    aggregator = ResultAggregator()

    assert aggregator.unregister_strategy("hybrid") is True
    assert "hybrid" not in [strategy.name for strategy in aggregator.strategies]
    assert aggregator.unregister_strategy("hybrid") is False
