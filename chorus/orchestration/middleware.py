from __future__ import annotations

import time
from typing import TYPE_CHECKING, Protocol

from ..core.errors import RoutingError
from ..schemas.messages import AgentMessage

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .routing import RoutingContext


class MessageMiddleware(Protocol):
    async def process(self, message: AgentMessage, context: "RoutingContext") -> AgentMessage:
        ...


class SceneEnrichmentMiddleware:
    """Stamp the turn's scene summary onto the payload."""

    async def process(self, message: AgentMessage, context: "RoutingContext") -> AgentMessage:
        scene = context.scene
        if scene is not None:
            message.payload["scene_enrichment"] = {
                "scene_type": scene.scene_type.value,
                "emotion": scene.emotion.value,
                "confidence": scene.confidence,
                "interaction_strategy": scene.interaction_strategy,
            }
        return message


class PriorityAdjustmentMiddleware:
    def __init__(self, *, urgency_threshold: float = 0.8, boost: float = 1.5) -> None:
        self._urgency_threshold = urgency_threshold
        self._boost = boost

    async def process(self, message: AgentMessage, context: "RoutingContext") -> AgentMessage:
        scene = context.scene
        if scene is not None and scene.user_intent.urgency_level > self._urgency_threshold:
            message.metadata.priority = min(message.metadata.priority * self._boost, 1.0)
        return message


class MessageValidationMiddleware:
    async def process(self, message: AgentMessage, context: "RoutingContext") -> AgentMessage:
        if not message.id or not message.type:
            raise RoutingError("Invalid message format: missing id or type")
        return message


class PerformanceMonitoringMiddleware:
    async def process(self, message: AgentMessage, context: "RoutingContext") -> AgentMessage:
        message.payload["performance_metrics"] = {
            "routing_started_at": time.time(),
            "available_responders": len(context.responders),
        }
        return message


def default_middleware() -> dict[str, MessageMiddleware]:
    return {
        "scene_enrichment": SceneEnrichmentMiddleware(),
        "priority_adjustment": PriorityAdjustmentMiddleware(),
        "message_validation": MessageValidationMiddleware(),
        "performance_monitoring": PerformanceMonitoringMiddleware(),
    }


__all__ = [
    "MessageMiddleware",
    "MessageValidationMiddleware",
    "PerformanceMonitoringMiddleware",
    "PriorityAdjustmentMiddleware",
    "SceneEnrichmentMiddleware",
    "default_middleware",
]
