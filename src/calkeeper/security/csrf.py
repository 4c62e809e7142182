"""Anti-forgery tokens held in the web session.

Two independent checks live here:

- ``CsrfGuard``: a per-session form/header token, valid for one hour, that
  every mutating request must present.
- ``issue_oauth_state`` / ``consume_oauth_state``: the one-time OAuth
  ``state`` value stored at redirect time and compared on callback.

Both operate on the session's data mapping passed in by the caller; nothing
here touches global request state.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from collections.abc import Callable, MutableMapping
from typing import Any

from calkeeper.errors import CsrfStateError, CsrfTokenError

logger = logging.getLogger(__name__)

TOKEN_KEY = "csrf_token"
TOKEN_TIME_KEY = "csrf_token_time"
TOKEN_LIFETIME_SECONDS = 3600

OAUTH_STATE_KEY = "oauth_state"
OAUTH_STATE_TIME_KEY = "oauth_state_time"
OAUTH_STATE_TTL_SECONDS = 600


class CsrfGuard:
    """Issue and verify the session's CSRF token."""

    def __init__(
        self,
        session_data: MutableMapping[str, Any],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._data = session_data
        self._clock = clock

    def _is_expired(self) -> bool:
        issued_at = self._data.get(TOKEN_TIME_KEY)
        if issued_at is None:
            return True
        return (self._clock() - float(issued_at)) > TOKEN_LIFETIME_SECONDS

    def issue(self) -> str:
        """Return the current token, generating a new one if absent or expired."""
        token = self._data.get(TOKEN_KEY)
        if token and not self._is_expired():
            return token

        token = secrets.token_hex(32)
        self._data[TOKEN_KEY] = token
        self._data[TOKEN_TIME_KEY] = self._clock()
        logger.debug("Issued new CSRF token")
        return token

    def verify(self, supplied: str | None) -> bool:
        expected = self._data.get(TOKEN_KEY)
        if not expected or not supplied:
            return False
        if self._is_expired():
            return False
        return hmac.compare_digest(str(expected).encode(), supplied.encode())

    def require(self, supplied: str | None) -> None:
        """Raise ``CsrfTokenError`` unless *supplied* verifies."""
        if not self.verify(supplied):
            logger.warning("Rejected request with missing, expired or invalid CSRF token")
            raise CsrfTokenError("Invalid CSRF token")


def issue_oauth_state(
    session_data: MutableMapping[str, Any],
    *,
    clock: Callable[[], float] = time.time,
) -> str:
    """Generate an OAuth ``state`` value and remember it in the session."""
    state = secrets.token_urlsafe(32)
    session_data[OAUTH_STATE_KEY] = state
    session_data[OAUTH_STATE_TIME_KEY] = clock()
    return state


def consume_oauth_state(
    session_data: MutableMapping[str, Any],
    supplied: str | None,
    *,
    clock: Callable[[], float] = time.time,
) -> None:
    """Compare *supplied* with the stored state and discard the stored value.

    The stored state is removed whatever the outcome, so it can never be
    replayed.

    Raises
    ------
    CsrfStateError
        If no state was stored, it expired, or it does not match.
    """
    expected = session_data.pop(OAUTH_STATE_KEY, None)
    issued_at = session_data.pop(OAUTH_STATE_TIME_KEY, None)

    if not expected or not supplied:
        raise CsrfStateError("OAuth state is missing")
    if issued_at is None or (clock() - float(issued_at)) > OAUTH_STATE_TTL_SECONDS:
        raise CsrfStateError("OAuth state has expired")
    if not hmac.compare_digest(str(expected).encode(), supplied.encode()):
        logger.warning(
            "OAuth callback state does not match the session (state=%s...)", supplied[:8]
        )
        raise CsrfStateError("OAuth state does not match")
