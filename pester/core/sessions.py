from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from .proto import Kicked

log = logging.getLogger("pester.sessions")


class Transport(Protocol):
    """What the core needs from a connection, whatever carries it on the wire."""

    kind: str
    user_id: Optional[str]

    def send(self, event: dict) -> bool:
        """Queue ``event`` for delivery; False when the connection can no longer deliver."""

    def close(self) -> None:
        """Tear the connection down after pending events are flushed."""


@dataclass(slots=True)
class RegisterOutcome:
    user_id: str
    transport: Transport
    superseded: Optional[Transport] = None

    @property
    def kicked(self) -> bool:
        return self.superseded is not None


class SessionRegistry:
    """Binds each user id to exactly one live transport."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Transport] = {}

    def register(self, user_id: str, transport: Transport) -> RegisterOutcome:
        """Bind ``user_id`` to ``transport``, kicking any other live session for it.

        The old transport gets a ``kicked`` event and is closed; the map entry is
        replaced in the same step, so there is never a moment with two sessions.
        """
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("user_id is required")

        old = self._sessions.get(user_id)
        superseded = old if old is not None and old is not transport else None
        self._sessions[user_id] = transport
        transport.user_id = user_id

        if superseded is not None:
            self._deliver(user_id, superseded, Kicked().to_wire())
            try:
                superseded.close()
            except Exception:
                log.warning("Failed to close superseded session for %s", user_id, exc_info=True)
            log.info("Kicked previous %s session of %s", superseded.kind, user_id)

        return RegisterOutcome(user_id=user_id, transport=transport, superseded=superseded)

    def lookup(self, user_id: str) -> Optional[Transport]:
        return self._sessions.get(user_id)

    def unregister(self, user_id: str, transport: Transport) -> bool:
        """Drop the session only while ``transport`` is still the one bound to ``user_id``.

        A superseded connection closing late must not wipe the session that replaced it.
        """
        if self._sessions.get(user_id) is not transport:
            log.debug("Ignored unregister of %s from a superseded %s connection", user_id, transport.kind)
            return False
        del self._sessions[user_id]
        return True

    def is_online(self, user_id: str) -> bool:
        return user_id in self._sessions

    def online(self) -> List[str]:
        return list(self._sessions)

    def send(self, user_id: str, event: dict) -> bool:
        transport = self._sessions.get(user_id)
        if transport is None:
            return False
        return self._deliver(user_id, transport, event)

    @staticmethod
    def _deliver(user_id: str, transport: Transport, event: dict) -> bool:
        # one dead peer must not abort a broadcast to the others
        try:
            return transport.send(event)
        except Exception:
            log.warning("Send of %s to %s failed", event.get("type"), user_id, exc_info=True)
            return False

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["Transport", "RegisterOutcome", "SessionRegistry"]
