from .events import OrchestrationEvent
from .messages import AgentMessage, MessageMetadata, RoutingExecution
from .plan import (
    AgentExecution,
    BackoffKind,
    ConditionType,
    ExecutionCondition,
    ExecutionMode,
    ExecutionPhase,
    ExecutionPlan,
    InteractionComplexity,
    ResourceRequirement,
    RetryPolicy,
)
from .results import (
    AgentResult,
    AggregatedResult,
    AggregationMetadata,
    ChatResponse,
    ExecutionMetrics,
    NextAction,
    QualityBreakdown,
    ResponseData,
    TurnResult,
)
from .scene import (
    ConversationFlow,
    Emotion,
    ParticipationSuggestion,
    SceneAnalysis,
    SceneType,
    SocialDynamics,
    UserIntent,
)

__all__ = [
    "AgentExecution",
    "AgentMessage",
    "AgentResult",
    "AggregatedResult",
    "AggregationMetadata",
    "BackoffKind",
    "ChatResponse",
    "ConditionType",
    "ConversationFlow",
    "Emotion",
    "ExecutionCondition",
    "ExecutionMetrics",
    "ExecutionMode",
    "ExecutionPhase",
    "ExecutionPlan",
    "InteractionComplexity",
    "MessageMetadata",
    "NextAction",
    "OrchestrationEvent",
    "ParticipationSuggestion",
    "QualityBreakdown",
    "ResourceRequirement",
    "ResponseData",
    "RetryPolicy",
    "RoutingExecution",
    "SceneAnalysis",
    "SceneType",
    "SocialDynamics",
    "TurnResult",
    "UserIntent",
]
