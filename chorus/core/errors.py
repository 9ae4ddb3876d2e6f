from __future__ import annotations


class ChorusError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigurationError(ChorusError):
    """Raised by administrative calls when the orchestrator cannot operate at all."""


class ResponderInvocationError(ChorusError):
    """Raised internally when a responder invocation fails and may be retried."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class RoutingError(ChorusError):
    """Raised when a message cannot be delivered to a routing target."""
