"""In-memory registry of live build sessions."""

import threading

from packager.models.session import BuildSession


class SessionRegistry:
    """Maps session id to BuildSession. Safe to use from several threads."""

    def __init__(self) -> None:
        self._sessions: dict[str, BuildSession] = {}
        self._lock = threading.Lock()

    def add(self, session: BuildSession) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise KeyError(f"Session {session.id} already registered")
            self._sessions[session.id] = session

    def get(self, session_id: str) -> BuildSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> BuildSession | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
