from __future__ import annotations

from typing import Any, Collection, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..schemas.results import AgentResult
from ..schemas.scene import SceneAnalysis


class ResponderInput(BaseModel):
    """Input handed to a responder; built fresh for every invocation."""

    conversation_id: str
    user_message: str
    history: list[dict[str, Any]] = Field(default_factory=list)
    scene: SceneAnalysis
    expected_role: str = "participant"
    phase: str | None = None
    previous_results: list[AgentResult] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class Responder(Protocol):
    id: str
    capabilities: Collection[str]

    async def execute(self, payload: ResponderInput) -> AgentResult:
        ...


def responder_capabilities(responder: Responder) -> frozenset[str]:
    return frozenset(str(capability) for capability in getattr(responder, "capabilities", ()) or ())


__all__ = ["Responder", "ResponderInput", "responder_capabilities"]
