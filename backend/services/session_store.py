from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace


@dataclass
class AdminSession:
    session_id: str
    admin_user_id: int
    created_at: float
    last_activity: float
    ip_address: str | None = None
    user_agent: str | None = None
    two_factor_verified: bool = False


@dataclass
class FailedAttempts:
    count: int = 0
    last_attempt: float = 0.0


class AdminSessionStore(ABC):
    """Server-side admin sessions. Swap for a shared cache when running more than one process."""

    @abstractmethod
    def get(self, session_id: str) -> AdminSession | None: ...

    @abstractmethod
    def create(self, session: AdminSession) -> None: ...

    @abstractmethod
    def touch(self, session_id: str, now: float | None = None) -> bool:
        """Bump `last_activity` of an existing session; False if it is gone."""

    @abstractmethod
    def mark_two_factor_verified(self, session_id: str) -> bool: ...

    @abstractmethod
    def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    def delete_for_admin(self, admin_user_id: int) -> int: ...

    @abstractmethod
    def sweep(self, max_idle_seconds: float, now: float | None = None) -> list[str]:
        """Remove sessions idle longer than `max_idle_seconds`; return the removed ids."""


class LoginAttemptStore(ABC):
    @abstractmethod
    def get(self, identifier: str) -> FailedAttempts | None: ...

    @abstractmethod
    def increment(self, identifier: str, now: float | None = None) -> FailedAttempts: ...

    @abstractmethod
    def delete(self, identifier: str) -> None: ...


class InMemoryAdminSessionStore(AdminSessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, AdminSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> AdminSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def create(self, session: AdminSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = replace(session)

    def touch(self, session_id: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_activity = now
            return True

    def mark_two_factor_verified(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.two_factor_verified = True
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def delete_for_admin(self, admin_user_id: int) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.admin_user_id == admin_user_id]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)

    def sweep(self, max_idle_seconds: float, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if now - s.last_activity > max_idle_seconds]
            for sid in expired:
                del self._sessions[sid]
            return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class InMemoryLoginAttemptStore(LoginAttemptStore):
    def __init__(self) -> None:
        self._attempts: dict[str, FailedAttempts] = {}
        self._lock = threading.Lock()

    def get(self, identifier: str) -> FailedAttempts | None:
        with self._lock:
            attempts = self._attempts.get(identifier)
            return replace(attempts) if attempts else None

    def increment(self, identifier: str, now: float | None = None) -> FailedAttempts:
        now = time.time() if now is None else now
        with self._lock:
            attempts = self._attempts.setdefault(identifier, FailedAttempts())
            attempts.count += 1
            attempts.last_attempt = now
            return replace(attempts)

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)


_SESSION_STORE = InMemoryAdminSessionStore()
_ATTEMPT_STORE = InMemoryLoginAttemptStore()


def get_admin_session_store() -> AdminSessionStore:
    return _SESSION_STORE


def get_login_attempt_store() -> LoginAttemptStore:
    return _ATTEMPT_STORE
