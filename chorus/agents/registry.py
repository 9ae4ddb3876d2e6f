from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Iterable, Mapping

from ..core.logging import get_logger
from .base import Responder, responder_capabilities

logger = get_logger(name=__name__)


class ResponderRegistry:
    """Process-lifetime set of responders.

    Writers build a new mapping under a lock and swap it in; readers take the
    current snapshot without locking, so a turn never observes a half-applied
    registration.
    """

    def __init__(self, responders: Iterable[Responder] | None = None) -> None:
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, Responder] = MappingProxyType({})
        for responder in responders or ():
            self.register(responder)

    def register(self, responder: Responder) -> None:
        responder_id = getattr(responder, "id", None)
        if not responder_id:
            raise ValueError("Responder must expose a non-empty id")
        with self._lock:
            updated = dict(self._snapshot)
            if responder_id in updated:
                logger.warning("responder_replaced", responder=responder_id)
            updated[responder_id] = responder
            self._snapshot = MappingProxyType(updated)
        logger.debug("responder_registered", responder=responder_id)

    def unregister(self, responder_id: str) -> bool:
        with self._lock:
            if responder_id not in self._snapshot:
                return False
            updated = dict(self._snapshot)
            del updated[responder_id]
            self._snapshot = MappingProxyType(updated)
        logger.debug("responder_unregistered", responder=responder_id)
        return True

    def get(self, responder_id: str) -> Responder | None:
        return self._snapshot.get(responder_id)

    def all(self) -> list[Responder]:
        return list(self._snapshot.values())

    def discover(self, capabilities: Iterable[str]) -> list[Responder]:
        wanted = {str(capability) for capability in capabilities}
        if not wanted:
            return self.all()
        return [responder for responder in self._snapshot.values() if responder_capabilities(responder) & wanted]

    def __contains__(self, responder_id: object) -> bool:
        return responder_id in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)


__all__ = ["ResponderRegistry"]
