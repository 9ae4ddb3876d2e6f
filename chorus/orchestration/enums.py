from __future__ import annotations

from enum import Enum


class StrategyTrait(str, Enum):
    EFFICIENCY = "efficiency"
    EMOTION = "emotion"
    COLLABORATIVE = "collaborative"


class EventType(str, Enum):
    ORCHESTRATION_STARTED = "orchestration_started"
    SCENE_ANALYZED = "scene_analyzed"
    PLAN_CREATED = "plan_created"
    PHASE_STARTED = "phase_started"
    PHASE_SKIPPED = "phase_skipped"
    RESPONDER_COMPLETE = "responder_complete"
    PHASE_COMPLETE = "phase_complete"
    AGGREGATION_COMPLETE = "aggregation_complete"
    ORCHESTRATION_COMPLETED = "orchestration_completed"
    ORCHESTRATION_FAILED = "orchestration_failed"


class SkipReason(str, Enum):
    CONDITION_UNMET = "condition_unmet"
    DEPENDENCY_UNMET = "dependency_unmet"
    EMPTY_PHASE = "empty_phase"


class TargetType(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    BROADCAST = "broadcast"
    CONDITIONAL = "conditional"


class DeliveryTiming(str, Enum):
    IMMEDIATE = "immediate"
    DELAYED = "delayed"
    SCHEDULED = "scheduled"


class RoutingConditionType(str, Enum):
    SENDER = "sender"
    MESSAGE_TYPE = "message_type"
    PAYLOAD_FIELD = "payload_field"
    SCENE_TYPE = "scene_type"
    CAPABILITY = "capability"
    CUSTOM = "custom"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    MATCHES = "matches"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"
    IN = "in"


class MessageType(str, Enum):
    SCENE_ANALYSIS = "scene_analysis_result"
    RESPONSE_BATCH = "response_batch"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_ERROR = "execution_error"
    EXECUTION_REQUEST = "execution_request"
    AGGREGATION_COMPLETED = "aggregation_completed"


__all__ = [
    "ConditionOperator",
    "DeliveryTiming",
    "EventType",
    "MessageType",
    "RoutingConditionType",
    "SkipReason",
    "StrategyTrait",
    "TargetType",
]
