"""
Purchase session store
Short-lived sessions with lazy expiry and monotonic status transitions
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from agentmarket.errors import InputValidationError, SessionNotFoundError, SessionStateError
from agentmarket.models import Session, SessionStatus, utcnow

logger = structlog.get_logger()

ALLOWED_TRANSITIONS = {
    SessionStatus.PREPARING: {SessionStatus.PAYMENT_READY, SessionStatus.FAILED, SessionStatus.EXPIRED},
    SessionStatus.PAYMENT_READY: {SessionStatus.PAID, SessionStatus.FAILED, SessionStatus.EXPIRED},
    SessionStatus.PAID: {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.EXPIRED: set(),
}

IMMUTABLE_FIELDS = {"session_id", "created_at"}


class SessionManager:
    """
    In-process session store.

    A session past its expiry is indistinguishable from one that never
    existed. Updates for one session are serialized by a per-session lock.
    """

    def __init__(self, ttl_seconds: int = 900, clock: Optional[Callable[[], datetime]] = None):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _evict(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)

    async def create(self, session: Session) -> str:
        """Store a new session, stamping its creation and expiry times"""
        if session.session_id in self._sessions:
            raise SessionStateError("Session already exists", {"session_id": session.session_id})

        now = self._clock()
        stored = session.model_copy(update={"created_at": now, "expires_at": now + self.ttl})
        self._sessions[stored.session_id] = stored
        self._locks[stored.session_id] = asyncio.Lock()

        logger.info(
            "session_created",
            session_id=stored.session_id,
            user_id=stored.user_id,
            status=stored.status.value,
        )
        return stored.session_id

    def get(self, session_id: str) -> Optional[Session]:
        """Get a live session, or None if it is unknown or expired"""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._evict(session_id)
            logger.info("session_expired", session_id=session_id)
            return None
        return session.model_copy()

    async def update(self, session_id: str, **changes: Any) -> Session:
        """
        Apply ``changes`` to the latest stored session.

        Raises:
            SessionNotFoundError: unknown or expired session
            SessionStateError: forbidden status transition or retry budget overrun
        """
        lock = self._locks.get(session_id)
        if lock is None:
            raise SessionNotFoundError({"session_id": session_id})

        async with lock:
            current = self.get(session_id)
            if current is None:
                raise SessionNotFoundError({"session_id": session_id})

            unknown = set(changes) - set(Session.model_fields)
            if unknown or IMMUTABLE_FIELDS & set(changes):
                raise InputValidationError(
                    f"Cannot update session fields: {sorted(unknown | (IMMUTABLE_FIELDS & set(changes)))}",
                    field="changes",
                )

            if "status" in changes:
                new_status = SessionStatus(changes["status"])
                if new_status not in ALLOWED_TRANSITIONS[current.status]:
                    raise SessionStateError(
                        f"Invalid session transition: {current.status.value} -> {new_status.value}",
                        {"session_id": session_id, "status": current.status.value},
                    )
                changes["status"] = new_status

            retry_count = changes.get("retry_count", current.retry_count)
            max_retries = changes.get("max_retries", current.max_retries)
            if retry_count > max_retries:
                raise SessionStateError(
                    "Retry budget exhausted",
                    {"session_id": session_id, "retry_count": retry_count, "max_retries": max_retries},
                )

            updated = current.model_copy(update=changes)
            self._sessions[session_id] = updated

        if "status" in changes:
            logger.info("session_status_changed", session_id=session_id, status=updated.status.value)
        return updated.model_copy()

    def delete(self, session_id: str) -> bool:
        existed = session_id in self._sessions
        self._evict(session_id)
        return existed

    def get_by_user(self, user_id: str) -> List[Session]:
        """Live sessions for a user, oldest first"""
        sessions = [self.get(sid) for sid, s in list(self._sessions.items()) if s.user_id == user_id]
        return [s for s in sessions if s is not None]

    def cleanup(self) -> int:
        """Drop every expired session; returns how many were removed"""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for session_id in expired:
            self._evict(session_id)
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Live session counts by status"""
        self.cleanup()
        by_status = {status.value: 0 for status in SessionStatus}
        for session in self._sessions.values():
            by_status[session.status.value] += 1
        return {"total": len(self._sessions), "by_status": by_status}
