from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SceneType(str, Enum):
    CASUAL_CHAT = "casual_chat"
    EMOTIONAL_SUPPORT = "emotional_support"
    WORK_DISCUSSION = "work_discussion"
    PROBLEM_SOLVING = "problem_solving"
    CREATIVE_BRAINSTORM = "creative_brainstorm"
    DEBATE_DISCUSSION = "debate_discussion"
    HUMOR_ENTERTAINMENT = "humor_entertainment"
    LEARNING_DISCUSSION = "learning_discussion"
    PERSONAL_SHARING = "personal_sharing"


class Emotion(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    WORRIED = "worried"
    ANGRY = "angry"


class SocialDynamics(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_tone: str = "neutral"
    power_dynamics: str = "balanced"
    intimacy_level: float = Field(default=0.5, ge=0.0, le=1.0)
    group_cohesion: float = Field(default=0.5, ge=0.0, le=1.0)


class UserIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary_intent: str = "chat"
    secondary_intents: tuple[str, ...] = ()
    urgency_level: float = Field(default=0.3, ge=0.0, le=1.0)
    expectation_type: str = "casual_response"


class ConversationFlow(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: str = "development"
    momentum: str = "steady"
    topic_progression: tuple[str, ...] = ()
    interaction_pattern: str = "discussion"


class ParticipationSuggestion(BaseModel):
    """A classifier's recommendation for one responder's part in the turn."""

    model_config = ConfigDict(frozen=True)

    responder_id: str = Field(..., min_length=1)
    role: str = "participant"
    timing: str = "immediate"
    expected_contribution: str = ""
    priority: float = Field(default=0.5, ge=0.0, le=1.0)


class SceneAnalysis(BaseModel):
    """Classification of a conversational turn consumed by scheduling and aggregation.

    Priorities in ``participation_plan`` are independent ranking scores and are
    not expected to sum to one.
    """

    model_config = ConfigDict(frozen=True)

    scene_type: SceneType = SceneType.CASUAL_CHAT
    secondary_scene: SceneType | None = None
    emotion: Emotion = Emotion.NEUTRAL
    emotional_intensity: float = Field(default=0.3, ge=0.0, le=1.0)
    topics: tuple[str, ...] = ()
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    social_dynamics: SocialDynamics = Field(default_factory=SocialDynamics)
    user_intent: UserIntent = Field(default_factory=UserIntent)
    conversation_flow: ConversationFlow = Field(default_factory=ConversationFlow)
    participation_plan: tuple[ParticipationSuggestion, ...] = ()
    interaction_strategy: str = "natural_flow"
    reasoning: str = ""
    analysis_depth: Literal["basic", "standard", "deep"] = "standard"

    def ranked_participants(self) -> list[ParticipationSuggestion]:
        """Participation suggestions ordered by descending priority, stable for ties."""
        return sorted(self.participation_plan, key=lambda item: item.priority, reverse=True)
