from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Optional

from app.services.errors import ProtocolViolation

if TYPE_CHECKING:
    from app.services.live_session import LiveSession


class ConnectionRegistry:
    """connection id -> live session, at most one live session per connection.

    Touched from the event loop and from the status endpoint, so every access
    goes through one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, "LiveSession"] = {}
        self._logger = logging.getLogger("relay.registry")

    def register(self, connection_id: str, session: "LiveSession") -> None:
        with self._lock:
            existing = self._sessions.get(connection_id)
            if existing is not None and existing is not session and not existing.is_terminal:
                raise ProtocolViolation("A session is already active on this connection")
            self._sessions[connection_id] = session
        self._logger.info("Registered session %s on connection %s", session.session_id, connection_id)

    def get(self, connection_id: str) -> Optional["LiveSession"]:
        with self._lock:
            return self._sessions.get(connection_id)

    def release(self, connection_id: str, session: Optional["LiveSession"] = None) -> None:
        with self._lock:
            current = self._sessions.get(connection_id)
            if current is None or (session is not None and current is not session):
                return
            del self._sessions[connection_id]
        self._logger.info("Released connection %s", connection_id)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for session in self._sessions.values() if not session.is_terminal)

    def snapshot(self) -> list[dict]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [session.snapshot() for session in sessions]

    async def shutdown(self) -> None:
        """Abort every live session; used when the app stops."""
        with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
        if not sessions:
            return
        self._logger.info("Shutdown: aborting %d session(s)", len(sessions))
        results = await asyncio.gather(
            *(session.abort("server shutdown") for _, session in sessions),
            return_exceptions=True,
        )
        for (connection_id, _), result in zip(sessions, results):
            if isinstance(result, Exception):
                self._logger.warning("Shutdown abort failed for %s: %s", connection_id, result)
