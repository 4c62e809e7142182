"""Server-side web sessions hardened against fixation and hijacking.

``SessionManager.start()`` is the only way to obtain a session for a request.
It validates the stored session state every time:

- a client-supplied id that the store does not know is never adopted;
- sessions older than ``SESSION_MAX_AGE_SECONDS`` are destroyed;
- a changed user agent destroys the session;
- the id is rotated every ``SESSION_ROTATE_SECONDS`` with data preserved;
- sessions past the maximum age are swept from the store when new sessions
  are created, at most once per ``SESSION_SWEEP_INTERVAL_SECONDS``.

The returned handle carries the session data mapping and cookie settings and
is passed explicitly to whatever needs it.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "calkeeper_session"
SESSION_MAX_AGE_SECONDS = 14400
SESSION_ROTATE_SECONDS = 1800
SESSION_SWEEP_INTERVAL_SECONDS = 60

_STATE_KEY = "_session_state"


@dataclass
class SessionState:
    created_at: float
    last_regenerated_at: float
    user_agent: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at,
            "last_regenerated_at": self.last_regenerated_at,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionState:
        return cls(
            created_at=float(raw["created_at"]),
            last_regenerated_at=float(raw["last_regenerated_at"]),
            user_agent=str(raw["user_agent"]),
        )


class InMemorySessionStore:
    """Process-local session storage keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}

    def get(self, session_id: str) -> dict[str, Any] | None:
        return self._sessions.get(session_id)

    def put(self, session_id: str, data: dict[str, Any]) -> None:
        self._sessions[session_id] = data

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def purge_created_before(self, cutoff: float) -> int:
        """Drop sessions created before *cutoff*; return how many were dropped."""
        stale = [
            session_id
            for session_id, data in self._sessions.items()
            if _STATE_KEY not in data or data[_STATE_KEY]["created_at"] < cutoff
        ]
        for session_id in stale:
            del self._sessions[session_id]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass
class CookieSettings:
    name: str = SESSION_COOKIE_NAME
    httponly: bool = True
    samesite: str = "strict"
    secure: bool = True
    max_age: int = SESSION_MAX_AGE_SECONDS


@dataclass
class SessionHandle:
    """A validated session for the lifetime of one request."""

    session_id: str
    data: dict[str, Any]
    cookie: CookieSettings
    rotated: bool = False

    @property
    def state(self) -> SessionState:
        return SessionState.from_dict(self.data[_STATE_KEY])

    def apply_cookie(self, response: Any) -> None:
        """Set the session cookie on a Starlette/FastAPI response."""
        response.set_cookie(
            key=self.cookie.name,
            value=self.session_id,
            max_age=self.cookie.max_age,
            httponly=self.cookie.httponly,
            samesite=self.cookie.samesite,
            secure=self.cookie.secure,
        )


class SessionManager:
    """Start, validate, rotate and destroy sessions held in a store."""

    def __init__(
        self,
        store: InMemorySessionStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store or InMemorySessionStore()
        self._clock = clock
        self._last_sweep = clock()

    @staticmethod
    def _new_id() -> str:
        return secrets.token_urlsafe(36)

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < SESSION_SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        purged = self.store.purge_created_before(now - SESSION_MAX_AGE_SECONDS)
        if purged:
            logger.debug("Purged %d expired sessions", purged)

    def _create(self, user_agent: str) -> tuple[str, dict[str, Any]]:
        now = self._clock()
        self._sweep(now)
        session_id = self._new_id()
        data: dict[str, Any] = {
            _STATE_KEY: SessionState(
                created_at=now,
                last_regenerated_at=now,
                user_agent=user_agent,
            ).to_dict()
        }
        self.store.put(session_id, data)
        return session_id, data

    def destroy(self, session_id: str) -> None:
        self.store.delete(session_id)

    def _rotate(self, session_id: str, data: dict[str, Any]) -> str:
        new_id = self._new_id()
        data[_STATE_KEY]["last_regenerated_at"] = self._clock()
        self.store.put(new_id, data)
        self.store.delete(session_id)
        return new_id

    @contextmanager
    def start(
        self,
        session_id: str | None,
        user_agent: str | None,
        *,
        require_secure_cookie: bool = True,
    ) -> Iterator[SessionHandle]:
        """Yield a validated session for one request.

        The session data is written back to the store when the block exits,
        including when it exits with an exception.
        """
        fingerprint = user_agent or ""
        cookie = CookieSettings(secure=require_secure_cookie)
        data = self.store.get(session_id) if session_id else None

        if session_id and data is not None and _STATE_KEY in data:
            handle = self._validate(session_id, data, fingerprint, cookie)
        else:
            # Unknown ids are never adopted (fixation defense).
            new_id, data = self._create(fingerprint)
            handle = SessionHandle(session_id=new_id, data=data, cookie=cookie, rotated=True)

        try:
            yield handle
        finally:
            self.store.put(handle.session_id, handle.data)

    def _validate(
        self,
        session_id: str,
        data: dict[str, Any],
        fingerprint: str,
        cookie: CookieSettings,
    ) -> SessionHandle:
        state = SessionState.from_dict(data[_STATE_KEY])
        now = self._clock()

        if now - state.created_at > SESSION_MAX_AGE_SECONDS:
            logger.info("Session exceeded maximum age; destroying")
            return self._restart(session_id, fingerprint, cookie)

        if state.user_agent != fingerprint:
            logger.warning("Session fingerprint mismatch; possible hijack, destroying session")
            return self._restart(session_id, fingerprint, cookie)

        if now - state.last_regenerated_at > SESSION_ROTATE_SECONDS:
            new_id = self._rotate(session_id, data)
            logger.debug("Rotated session identifier")
            return SessionHandle(session_id=new_id, data=data, cookie=cookie, rotated=True)

        return SessionHandle(session_id=session_id, data=data, cookie=cookie)

    def _restart(self, session_id: str, fingerprint: str, cookie: CookieSettings) -> SessionHandle:
        self.destroy(session_id)
        new_id, data = self._create(fingerprint)
        return SessionHandle(session_id=new_id, data=data, cookie=cookie, rotated=True)
