"""Bounded registry of active realtime transcription sessions."""
from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .realtime_session import TranscriptionSession

logger = logging.getLogger(__name__)

MAX_CONCURRENT_SESSIONS = 2


class SessionRegistry:
    """Tracks active sessions by id and enforces the admission cap.

    Every operation runs under one lock so the size check in ``admit`` and the
    insert that follows can never interleave with another admit or remove.
    """

    def __init__(self, capacity: int = MAX_CONCURRENT_SESSIONS) -> None:
        if capacity < 1:
            raise ValueError("Session capacity must be at least 1")
        self._capacity = capacity
        self._sessions: dict[str, Optional[TranscriptionSession]] = {}
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def admit(self, session_id: str) -> bool:
        """Reserve a slot for ``session_id``; False when full or the id is taken."""
        with self._lock:
            if len(self._sessions) >= self._capacity:
                logger.info("Registry full (%d/%d); refusing %s", len(self._sessions), self._capacity, session_id)
                return False
            if session_id in self._sessions:
                logger.warning("Session id %s already registered", session_id)
                return False
            self._sessions[session_id] = None
            return True

    def attach(self, session_id: str, session: TranscriptionSession) -> None:
        """Bind a constructed session to a slot reserved by ``admit``."""
        with self._lock:
            if session_id not in self._sessions:
                raise KeyError(f"Session {session_id} was not admitted")
            self._sessions[session_id] = session

    def remove(self, session_id: str) -> bool:
        """Release the slot for ``session_id``. Returns False if it was not present."""
        with self._lock:
            if session_id not in self._sessions:
                return False
            del self._sessions[session_id]
            return True

    def get(self, session_id: str) -> Optional[TranscriptionSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def size(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
