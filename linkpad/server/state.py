from __future__ import annotations

import secrets
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from .adapters.store import Identity


@dataclass
class LoginSession:
    identity: Identity
    note_loaded: bool = False


class SessionRegistry:
    """Server-side half of a login: the session id in the JWT maps to the
    identity (and credential) kept here."""

    def __init__(self) -> None:
        self._sessions: dict[str, LoginSession] = {}
        self._lock = RLock()

    def open(self, identity: Identity) -> str:
        sid = secrets.token_urlsafe(16)
        with self._lock:
            self._sessions[sid] = LoginSession(identity)
        return sid

    def get(self, sid: Optional[str]) -> Optional[Identity]:
        if not sid:
            return None
        with self._lock:
            session = self._sessions.get(sid)
            return session.identity if session else None

    def claim_first_load(self, sid: str) -> bool:
        """True exactly once per login session: the automatic note load."""
        with self._lock:
            session = self._sessions.get(sid)
            if session is None or session.note_loaded:
                return False
            session.note_loaded = True
            return True

    def close(self, sid: Optional[str]) -> bool:
        if not sid:
            return False
        with self._lock:
            return self._sessions.pop(sid, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


session_registry = SessionRegistry()
