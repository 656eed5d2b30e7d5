"""
Purchase sessions for the two-phase purchase flow.

Discovery and signing run in different trust boundaries, so the state
between prepare, execute and complete lives here, keyed by a random id
and bounded by an expiry. The store is an owned object with an explicit
start()/stop() lifecycle for its sweep task.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from .errors import SessionNotFoundError, SessionStateError
from .offers import PaymentInstruction

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 15 * 60
DEFAULT_CLEANUP_INTERVAL = 5 * 60
DEFAULT_MAX_RETRIES = 2


class SessionStatus(str, Enum):
    PREPARING = "preparing"
    PAYMENT_READY = "payment_ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED)


@dataclass
class PurchaseSession:
    session_id: str
    created_at: float
    expires_at: float
    user_id: Optional[str] = None
    status: SessionStatus = SessionStatus.PREPARING
    selected_service: Optional[dict] = None
    alternative_services: list[dict] = field(default_factory=list)
    health_check_results: dict[str, dict] = field(default_factory=dict)
    request_data: Any = None
    transaction_id: Optional[str] = None
    payment_instruction: Optional[PaymentInstruction] = None
    signature: Optional[str] = None
    verification_result: Optional[dict] = None
    service_result: Any = None
    retry_count: int = 0
    last_error: Optional[str] = None
    max_retries: int = DEFAULT_MAX_RETRIES
    require_health_check: bool = True

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "selected_service": self.selected_service,
            "alternative_services": self.alternative_services,
            "health_check_results": self.health_check_results,
            "transaction_id": self.transaction_id,
            "payment_instruction": (
                self.payment_instruction.to_dict() if self.payment_instruction else None
            ),
            "signature": self.signature,
            "verification_result": self.verification_result,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


_UPDATABLE = {f.name for f in dataclasses.fields(PurchaseSession)} - {"session_id", "created_at"}


def _generate_session_id() -> str:
    entropy = secrets.token_bytes(32)
    return "ps_" + hashlib.sha256(entropy).hexdigest()[:32]


class SessionStore:
    """In-memory purchase sessions with lazy and periodic expiry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_SESSION_TTL,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._sessions: dict[str, PurchaseSession] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Begin periodic cleanup on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def stop(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def __aenter__(self) -> "SessionStore":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.cleanup()
            if removed:
                logger.info("Swept %d expired purchase sessions", removed)

    # -- records ----------------------------------------------------------

    def create(
        self,
        user_id: Optional[str] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        require_health_check: bool = True,
    ) -> PurchaseSession:
        now = self.clock()
        session = PurchaseSession(
            session_id=_generate_session_id(),
            created_at=now,
            expires_at=now + self.ttl_seconds,
            user_id=user_id,
            max_retries=max_retries,
            require_health_check=require_health_check,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.debug("Created purchase session %s", session.session_id)
        return session

    def get(self, session_id: str) -> Optional[PurchaseSession]:
        """Return a live session; expired ones are evicted on read."""
        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[session_id]
                return None
            return session

    def update(self, session_id: str, /, **changes: Any) -> PurchaseSession:
        """
        Apply field changes to a session.

        An expired session only accepts a change that sets expires_at and
        nothing else; any other change evicts it and raises.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        if "status" in changes:
            changes["status"] = SessionStatus(changes["status"])

        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            if session.is_expired(now) and set(changes) != {"expires_at"}:
                del self._sessions[session_id]
                raise SessionNotFoundError(f"Session expired: {session_id}")
            for key, value in changes.items():
                setattr(session, key, value)
            return session

    def transition(
        self,
        session_id: str,
        expected: Iterable[SessionStatus],
        status: SessionStatus,
        /,
        **changes: Any,
    ) -> PurchaseSession:
        """Move to status only if the session is currently in one of expected."""
        unknown = set(changes) - (_UPDATABLE - {"status"})
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        expected = {SessionStatus(s) for s in expected}

        now = self.clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_expired(now):
                self._sessions.pop(session_id, None)
                raise SessionNotFoundError(f"Session not found or expired: {session_id}")
            if session.status not in expected:
                wanted = ", ".join(sorted(s.value for s in expected))
                raise SessionStateError(f"Session is {session.status.value}, expected {wanted}")
            session.status = SessionStatus(status)
            for key, value in changes.items():
                setattr(session, key, value)
            return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def get_by_user(self, user_id: str) -> list[PurchaseSession]:
        now = self.clock()
        with self._lock:
            return [
                s for s in self._sessions.values()
                if s.user_id == user_id and not s.is_expired(now)
            ]

    def get_stats(self) -> dict:
        now = self.clock()
        by_status = {status.value: 0 for status in SessionStatus}
        expired = 0
        with self._lock:
            total = len(self._sessions)
            for session in self._sessions.values():
                if session.is_expired(now):
                    expired += 1
                else:
                    by_status[session.status.value] += 1
        return {"total": total, "by_status": by_status, "expired": expired}
