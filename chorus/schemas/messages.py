from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageMetadata(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    sender: str = "system"
    recipient: str | None = None
    priority: float = Field(default=0.5, ge=0.0, le=1.0)
    conversation_id: str | None = None


class AgentMessage(BaseModel):
    """Structured notification dispatched through the message router."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)


class RoutingExecution(BaseModel):
    rule_id: str
    message_id: str
    delivered_to: list[str] = Field(default_factory=list)
    scheduled_for: list[str] = Field(default_factory=list)
    success: bool = True
    errors: list[str] = Field(default_factory=list)
    degraded: bool = False
    dropped: bool = False
    execution_time_ms: float = Field(default=0.0, ge=0.0)
