"""In-memory session store with expiry and atomic mutation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from agent_relay.errors import SessionExpiredError, SessionNotFoundError
from agent_relay.orchestrator.models import Session, utc_now

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"session_id", "user_id", "created_at"})
_MUTABLE_FIELDS = frozenset(
    {"expires_at", "external_session_id", "task_count", "metadata"},
)


class SessionStore:
    """Owns the session table; every operation is one critical section.

    Records are never handed out directly: callers receive copies, so the only
    way to change a session is through this class.
    """

    def __init__(
        self,
        *,
        session_timeout_ms: int = 3_600_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._timeout = timedelta(milliseconds=session_timeout_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def create(self, user_id: str, metadata: Mapping[str, Any] | None = None) -> Session:
        now = self._clock()
        session = Session(
            session_id=str(uuid4()),
            user_id=user_id,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + self._timeout,
            task_count=0,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Session created: %s for user: %s", session.session_id, user_id)
        return _copy(session)

    def get(self, session_id: str) -> Session:
        """Return the session and refresh its last-access time.

        An expired session is evicted and reported as expired; the next lookup
        of the same id reports not-found.
        """

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            now = self._clock()
            if now > session.expires_at:
                del self._sessions[session_id]
                logger.info("Session expired and evicted: %s", session_id)
                raise SessionExpiredError(session_id, session.expires_at)
            session.last_accessed_at = now
            return _copy(session)

    def renew(self, session_id: str) -> Session:
        """Restart the expiry window of a stored session, even one that has lapsed."""

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            now = self._clock()
            session.last_accessed_at = now
            session.expires_at = now + self._timeout
            return _copy(session)

    def update(self, session_id: str, **changes: Any) -> Session:
        """Merge ``changes`` into the session; identity fields are ignored."""

        unknown = set(changes) - _MUTABLE_FIELDS - _IMMUTABLE_FIELDS - {"last_accessed_at"}
        if unknown:
            raise TypeError(f"Unknown session fields: {sorted(unknown)}")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            for name, value in changes.items():
                if name in _MUTABLE_FIELDS:
                    setattr(session, name, dict(value) if name == "metadata" else value)
            session.last_accessed_at = self._clock()
            updated = _copy(session)
        logger.debug("Session updated: %s", session_id)
        return updated

    def mutate(self, session_id: str, apply: Callable[[Session], None]) -> Session:
        """Read-modify-write under the table lock.

        ``apply`` receives a working copy; only mutable fields are written back.
        """

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            draft = _copy(session)
            apply(draft)
            for name in _MUTABLE_FIELDS:
                setattr(session, name, getattr(draft, name))
            session.last_accessed_at = self._clock()
            return _copy(session)

    def increment_task_count(self, session_id: str) -> None:
        """Atomically add one finished task; a missing session is ignored."""

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session.task_count += 1
            session.last_accessed_at = self._clock()

    def delete(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise SessionNotFoundError(session_id)
        logger.info("Session deleted: %s", session_id)

    def sweep_expired(self) -> int:
        """Drop every session past its expiry and return how many were removed."""

        with self._lock:
            now = self._clock()
            expired = [sid for sid, s in self._sessions.items() if s.expires_at < now]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    def list_by_user(self, user_id: str) -> list[Session]:
        with self._lock:
            return [_copy(s) for s in self._sessions.values() if s.user_id == user_id]

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def is_valid(self, session_id: str) -> bool:
        """True when the session exists and is unexpired. Does not refresh it."""

        with self._lock:
            session = self._sessions.get(session_id)
            return session is not None and self._clock() <= session.expires_at


def _copy(session: Session) -> Session:
    return replace(session, metadata=dict(session.metadata))
