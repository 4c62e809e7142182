"""Request-scoped dependencies for the calkeeper web API.

``get_request_context`` opens the caller's web session through
``SessionManager.start`` and bundles everything a route needs (session
handle, CSRF guard, configuration, a factory for ``CalendarSession``) into a
``RequestContext``.  Nothing is read from module-level globals; shared
resources live on ``app.state`` and are attached in ``create_app``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from fastapi import Depends, Request, Response

from calkeeper.cache import CalendarListCache
from calkeeper.calendar import CalendarSession
from calkeeper.config import CalendarConfig
from calkeeper.credential_store import CredentialStore
from calkeeper.security.csrf import TOKEN_KEY, CsrfGuard
from calkeeper.security.session import SESSION_COOKIE_NAME, SessionHandle, SessionManager

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = TOKEN_KEY


@dataclass
class RequestContext:
    """Everything a route handler may touch for one request."""

    config: CalendarConfig
    session: SessionHandle
    csrf: CsrfGuard
    credential_store: CredentialStore
    http_client: httpx.AsyncClient
    calendar_cache: CalendarListCache | None = None

    def calendar_session(self, calendar_id: str | None = None) -> CalendarSession:
        """Build a CalendarSession for this request sharing the app's HTTP client."""
        session = CalendarSession(
            self.config,
            credential_store=self.credential_store,
            http_client=self.http_client,
            calendar_cache=self.calendar_cache,
        )
        if calendar_id is not None:
            session.set_calendar(calendar_id)
        return session

    def apply_session_cookie(self, response: Response) -> None:
        self.session.apply_cookie(response)


async def get_request_context(
    request: Request,
    response: Response,
) -> AsyncIterator[RequestContext]:
    """Yield the ``RequestContext`` for *request*.

    The session cookie is set on the injected *response*; routes that return
    their own ``Response`` object must call ``apply_session_cookie`` on it.
    """
    state = request.app.state
    config: CalendarConfig = state.config
    manager: SessionManager = state.session_manager

    with manager.start(
        request.cookies.get(SESSION_COOKIE_NAME),
        request.headers.get("user-agent"),
        require_secure_cookie=config.web.secure_cookies,
    ) as handle:
        handle.apply_cookie(response)
        yield RequestContext(
            config=config,
            session=handle,
            csrf=CsrfGuard(handle.data),
            credential_store=state.credential_store,
            http_client=state.http_client,
            calendar_cache=state.calendar_cache,
        )


async def require_csrf(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    """Dependency for mutating routes: reject requests without a valid CSRF token.

    The token is read from the ``X-CSRF-Token`` header, falling back to a
    ``csrf_token`` form field.
    """
    supplied = request.headers.get(CSRF_HEADER)
    if not supplied:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(
            ("application/x-www-form-urlencoded", "multipart/form-data")
        ):
            form = await request.form()
            value = form.get(CSRF_FORM_FIELD)
            supplied = value if isinstance(value, str) else None
    ctx.csrf.require(supplied)
    return ctx
