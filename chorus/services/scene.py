from __future__ import annotations

import re
from typing import Any, Protocol, Sequence

from ..agents.base import Responder, responder_capabilities
from ..core.logging import get_logger
from ..schemas.scene import (
    ConversationFlow,
    Emotion,
    ParticipationSuggestion,
    SceneAnalysis,
    SceneType,
    SocialDynamics,
    UserIntent,
)

logger = get_logger(name=__name__)

_WORD_PATTERN = re.compile(r"[a-z']+")

_SCENE_KEYWORDS: tuple[tuple[SceneType, Emotion | None, frozenset[str]], ...] = (
    (
        SceneType.CREATIVE_BRAINSTORM,
        Emotion.EXCITED,
        frozenset({"idea", "ideas", "brainstorm", "design", "story", "novel", "creative", "invent", "imagine"}),
    ),
    (
        SceneType.LEARNING_DISCUSSION,
        None,
        frozenset({"why", "explain", "analyze", "analyse", "reason", "understand", "learn", "teach"}),
    ),
    (
        SceneType.PROBLEM_SOLVING,
        None,
        frozenset({"help", "how", "solve", "fix", "solution", "broken", "issue", "stuck"}),
    ),
    (
        SceneType.EMOTIONAL_SUPPORT,
        Emotion.WORRIED,
        frozenset({"sad", "feel", "feeling", "stressed", "stress", "lonely", "anxious", "upset", "overwhelmed"}),
    ),
    (
        SceneType.WORK_DISCUSSION,
        None,
        frozenset({"work", "project", "task", "deadline", "meeting", "manager", "team"}),
    ),
    (
        SceneType.HUMOR_ENTERTAINMENT,
        Emotion.POSITIVE,
        frozenset({"joke", "funny", "laugh", "meme", "lol"}),
    ),
)

_POSITIVE_WORDS = frozenset({"happy", "glad", "great", "awesome", "love", "excited"})
_NEGATIVE_WORDS = frozenset({"sad", "upset", "hurt", "terrible", "disappointed", "miserable"})
_URGENT_WORDS = frozenset({"urgent", "asap", "immediately", "emergency", "now", "quickly", "hurry"})
_STOP_WORDS = frozenset({"the", "and", "for", "with", "that", "this", "you", "are", "was", "what", "can"})

_EMPATHY_CAPABILITIES = frozenset({"empathy", "emotional_support", "support", "listening"})
_CREATIVE_CAPABILITIES = frozenset({"creative", "creativity", "brainstorm", "storytelling"})


class SceneClassifier(Protocol):
    async def classify(
        self,
        message: str,
        *,
        history: Sequence[dict[str, Any]] = (),
        responders: Sequence[Responder] = (),
    ) -> SceneAnalysis:
        ...


def default_participation(responders: Sequence[Responder], *, limit: int = 2) -> tuple[ParticipationSuggestion, ...]:
    return tuple(
        ParticipationSuggestion(
            responder_id=responder.id,
            role="supporter",
            timing="immediate",
            expected_contribution="friendly reply",
            priority=0.5,
        )
        for responder in list(responders)[:limit]
    )


def default_scene_analysis(
    responders: Sequence[Responder] = (),
    *,
    reason: str = "classifier unavailable",
) -> SceneAnalysis:
    """Low-confidence casual scene used whenever classification fails."""
    return SceneAnalysis(
        scene_type=SceneType.CASUAL_CHAT,
        emotion=Emotion.NEUTRAL,
        emotional_intensity=0.3,
        topics=("general",),
        confidence=0.3,
        participation_plan=default_participation(responders),
        interaction_strategy="natural_conversation",
        reasoning=reason,
        analysis_depth="basic",
    )


class KeywordSceneClassifier:
    """Rule-based classifier matching English keyword groups.

    The first matching keyword group decides the scene. Emotion is refined
    from sentiment words when the group does not imply one, and the
    participation plan ranks responders whose capabilities suit the scene.
    """

    def __init__(self, *, confidence: float = 0.6, topic_limit: int = 3) -> None:
        self._confidence = confidence
        self._topic_limit = topic_limit

    async def classify(
        self,
        message: str,
        *,
        history: Sequence[dict[str, Any]] = (),
        responders: Sequence[Responder] = (),
    ) -> SceneAnalysis:
        words = _WORD_PATTERN.findall(message.lower())
        tokens = set(words)

        scene_type = SceneType.CASUAL_CHAT
        emotion = Emotion.NEUTRAL
        for candidate, implied_emotion, keywords in _SCENE_KEYWORDS:
            if tokens & keywords:
                scene_type = candidate
                if implied_emotion is not None:
                    emotion = implied_emotion
                break

        if emotion == Emotion.NEUTRAL:
            if tokens & _POSITIVE_WORDS:
                emotion = Emotion.POSITIVE
            elif tokens & _NEGATIVE_WORDS:
                emotion = Emotion.NEGATIVE

        urgent = bool(tokens & _URGENT_WORDS)
        question = "?" in message
        topics = [word for word in words if len(word) > 3 and word not in _STOP_WORDS][: self._topic_limit]

        analysis = SceneAnalysis(
            scene_type=scene_type,
            emotion=emotion,
            emotional_intensity=0.7 if emotion in {Emotion.NEGATIVE, Emotion.WORRIED, Emotion.EXCITED} else 0.4,
            topics=tuple(topics) or ("general",),
            confidence=self._confidence,
            social_dynamics=SocialDynamics(conversation_tone="casual", power_dynamics="equal"),
            user_intent=UserIntent(
                primary_intent="seek_help" if scene_type == SceneType.PROBLEM_SOLVING else "social_bonding",
                urgency_level=0.8 if urgent else 0.3,
                expectation_type="quick_answer" if urgent else "deep_discussion" if question else "casual_response",
            ),
            conversation_flow=ConversationFlow(
                phase="development" if history else "opening",
                momentum="stable",
                topic_progression=tuple(topics),
                interaction_pattern=self._interaction_pattern(scene_type, question),
            ),
            participation_plan=self._participation_plan(scene_type, responders),
            interaction_strategy="natural_conversation",
            reasoning="keyword match",
            analysis_depth="basic",
        )
        logger.debug(
            "scene_classified",
            scene=analysis.scene_type.value,
            emotion=analysis.emotion.value,
            participants=len(analysis.participation_plan),
        )
        return analysis

    @staticmethod
    def _interaction_pattern(scene_type: SceneType, question: bool) -> str:
        if scene_type == SceneType.CREATIVE_BRAINSTORM:
            return "brainstorming"
        if question:
            return "question_answer"
        return "discussion"

    @staticmethod
    def _participation_plan(
        scene_type: SceneType,
        responders: Sequence[Responder],
    ) -> tuple[ParticipationSuggestion, ...]:
        if scene_type == SceneType.EMOTIONAL_SUPPORT:
            preferred, contribution = _EMPATHY_CAPABILITIES, "emotional support"
        elif scene_type == SceneType.CREATIVE_BRAINSTORM:
            preferred, contribution = _CREATIVE_CAPABILITIES, "creative ideas"
        else:
            preferred, contribution = frozenset(), "perspective"

        ranked = sorted(
            responders,
            key=lambda responder: bool(responder_capabilities(responder) & preferred),
            reverse=True,
        )
        suggestions: list[ParticipationSuggestion] = []
        for index, responder in enumerate(ranked):
            matches = bool(responder_capabilities(responder) & preferred)
            role = "primary_responder" if index == 0 else "supporter"
            if scene_type == SceneType.CREATIVE_BRAINSTORM and matches:
                role = "creative_contributor"
            suggestions.append(
                ParticipationSuggestion(
                    responder_id=responder.id,
                    role=role,
                    timing="immediate" if index == 0 else "follow_up",
                    expected_contribution=contribution if matches else "perspective",
                    priority=round(max(0.1, 0.9 - 0.1 * index), 2),
                )
            )
        return tuple(suggestions)


__all__ = [
    "KeywordSceneClassifier",
    "SceneClassifier",
    "default_participation",
    "default_scene_analysis",
]
