from .base import Responder, ResponderInput
from .registry import ResponderRegistry

__all__ = ["Responder", "ResponderInput", "ResponderRegistry"]
