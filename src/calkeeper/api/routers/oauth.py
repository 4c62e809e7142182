"""OAuth endpoints: start, callback, status and logout.

The flow:
  1. GET /api/oauth/start
     - Generates a one-time ``state`` value and stores it in the caller's web
       session.
     - Redirects to the Google consent URL (or returns it as JSON when
       ``?redirect=false``).

  2. GET /api/oauth/callback
     - Consumes the stored ``state`` and compares it with the query value;
       a mismatch is ``CsrfStateError``.
     - Exchanges the authorization code and stores the credential.
     - Redirects to ``web.dashboard_url`` when configured, otherwise returns
       a JSON success payload.

  3. GET /api/oauth/status
     - Reports whether a usable credential exists.  Never returns token values.

  4. POST /api/oauth/logout
     - CSRF protected.  Deletes the stored credential.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from calkeeper.api.deps import RequestContext, get_request_context, require_csrf
from calkeeper.api.models import (
    ApiResponse,
    LogoutResponse,
    OAuthCallbackSuccess,
    OAuthStartResponse,
    OAuthStatusResponse,
)
from calkeeper.errors import AuthorizationError
from calkeeper.oauth import build_authorization_url, sanitize_provider_error, scopes_granted
from calkeeper.security.csrf import (
    OAUTH_STATE_KEY,
    OAUTH_STATE_TIME_KEY,
    consume_oauth_state,
    issue_oauth_state,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


@router.get(
    "/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to Google authorization URL"},
    },
)
async def oauth_start(
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the Google authorization URL. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    ctx: RequestContext = Depends(get_request_context),
) -> Response:
    """Begin the authorization-code flow for the caller's session."""
    state = issue_oauth_state(ctx.session.data)
    authorization_url = build_authorization_url(ctx.config.oauth, state=state)
    logger.info("OAuth flow started (state=%s...)", state[:8])

    response: Response
    if redirect:
        response = RedirectResponse(url=authorization_url, status_code=302)
    else:
        response = JSONResponse(
            content=OAuthStartResponse(
                authorization_url=authorization_url,
                state=state,
            ).model_dump()
        )
    ctx.apply_session_cookie(response)
    return response


@router.get("/callback")
async def oauth_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="OAuth state value."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    ctx: RequestContext = Depends(get_request_context),
) -> Response:
    """Handle the redirect back from Google.

    Raises
    ------
    CsrfStateError
        If the ``state`` query value does not match the session.
    AuthorizationError
        If Google reported an error or the code exchange failed.
    """
    if error:
        # The stored state must not survive a cancelled flow.
        ctx.session.data.pop(OAUTH_STATE_KEY, None)
        ctx.session.data.pop(OAUTH_STATE_TIME_KEY, None)
        logger.warning("OAuth provider returned error: %s", error)
        raise AuthorizationError(sanitize_provider_error(error))

    consume_oauth_state(ctx.session.data, state)

    if not code:
        raise AuthorizationError("Authorization code is missing from the callback.")

    async with ctx.calendar_session() as session:
        credential = await session.complete_authorization(code)

    dashboard_url = ctx.config.web.dashboard_url
    response: Response
    if dashboard_url:
        response = RedirectResponse(
            url=f"{dashboard_url}?{urlencode({'oauth_success': 'true'})}",
            status_code=302,
        )
    else:
        response = JSONResponse(
            content=OAuthCallbackSuccess(scope=" ".join(credential.scope) or None).model_dump()
        )
    ctx.apply_session_cookie(response)
    return response


@router.get("/status", response_model=ApiResponse[OAuthStatusResponse])
async def oauth_status(
    ctx: RequestContext = Depends(get_request_context),
) -> ApiResponse[OAuthStatusResponse]:
    async with ctx.calendar_session() as session:
        authenticated = await session.is_authenticated()
        credential = session.credential
        status = OAuthStatusResponse(
            authenticated=authenticated,
            state=str(session.state),
            scopes_granted=bool(
                credential is not None and scopes_granted(credential, ctx.config.oauth.scopes)
            ),
            calendar_id=session.calendar_id,
        )
    return ApiResponse[OAuthStatusResponse](data=status)


@router.post("/logout", response_model=ApiResponse[LogoutResponse])
async def oauth_logout(
    revoke: bool = Query(default=False, description="Also revoke the token at Google."),
    ctx: RequestContext = Depends(require_csrf),
) -> ApiResponse[LogoutResponse]:
    async with ctx.calendar_session() as session:
        await session.logout(revoke=revoke)
    logger.info("Logged out")
    return ApiResponse[LogoutResponse](data=LogoutResponse())
