"""Client side of the Google OAuth 2.0 authorization-code grant.

Three calls:

- :func:`build_authorization_url`: the consent URL the user visits.
- :meth:`OAuthTokenClient.exchange_code`: authorization code → credential.
- :meth:`OAuthTokenClient.refresh`: refresh token → new credential.

Token responses are turned into :class:`~calkeeper.credential_store.Credential`
objects whose ``expires_at`` is computed from the local issuance time plus
the server-reported ``expires_in``.

Secret material (client secret, tokens) is never logged.  Error messages are
passed through :func:`redact_credential_values` before they leave this
module.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError as PydanticValidationError

from calkeeper.config import OAuthConfig
from calkeeper.credential_store import Credential
from calkeeper.errors import AuthorizationError, ReauthenticationRequiredError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_grant": "The authorization code or refresh token is invalid, expired or revoked.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "invalid_client": "The OAuth client credentials were rejected.",
    "unauthorized_client": "This application is not authorized to use Google OAuth. "
    "Check your OAuth app configuration.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


def sanitize_provider_error(error: str) -> str:
    """Convert a provider error code into a safe, actionable message.

    Unknown error codes are replaced with a generic message.
    """
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The OAuth authorization failed. Please restart the flow.",
    )


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|code|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, whitespace-normalized error message from *response*."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return sanitize_provider_error(error_payload.strip())

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(redact_credential_values(raw_text).split())[:200]
    return "Request failed without an error payload"


def build_authorization_url(
    oauth: OAuthConfig,
    *,
    state: str | None = None,
) -> str:
    """Return the Google consent URL for *oauth*.

    ``access_type=offline`` and ``prompt=consent`` make Google return a
    refresh token on every grant.
    """
    params: dict[str, str] = {
        "client_id": oauth.client_id,
        "redirect_uri": oauth.redirect_uri,
        "response_type": "code",
        "scope": " ".join(oauth.scopes),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
    }
    if state:
        params["state"] = state
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


class OAuthTokenClient:
    """Calls to the Google token endpoint over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        oauth: OAuthConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] | None = None,
        token_url: str = GOOGLE_TOKEN_URL,
    ) -> None:
        self._oauth = oauth
        self._http_client = http_client
        self._clock = clock or (lambda: datetime.now(UTC))
        self._token_url = token_url

    async def _post(self, data: dict[str, str]) -> httpx.Response:
        return await self._http_client.post(
            self._token_url,
            data=data,
            headers={"Accept": "application/json"},
        )

    async def exchange_code(self, code: str) -> Credential:
        """Exchange an authorization *code* for a credential.

        Raises
        ------
        AuthorizationError
            If the request fails, the response carries an ``error`` field, or
            it lacks an access token.
        """
        normalized = code.strip()
        if not normalized:
            raise AuthorizationError("Authorization code is empty")

        issued_at = self._clock()
        try:
            response = await self._post(
                {
                    "code": normalized,
                    "client_id": self._oauth.client_id,
                    "client_secret": self._oauth.client_secret,
                    "redirect_uri": self._oauth.redirect_uri,
                    "grant_type": "authorization_code",
                }
            )
        except httpx.HTTPError as exc:
            raise AuthorizationError(
                f"Network error during token exchange: {redact_credential_values(str(exc))}"
            ) from exc

        payload = _json_object(response)
        if payload is None:
            raise AuthorizationError(
                f"Token endpoint returned HTTP {response.status_code} without a JSON body"
            )

        error = payload.get("error")
        if error:
            description = payload.get("error_description") or sanitize_provider_error(str(error))
            logger.warning("Authorization code exchange rejected: %s", error)
            raise AuthorizationError(f"OAuth error: {redact_credential_values(str(description))}")

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthorizationError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            credential = Credential.from_token_response(payload, issued_at=issued_at)
        except (PydanticValidationError, ValueError) as exc:
            raise AuthorizationError("Token response is missing a usable access_token") from exc

        if credential.refresh_token is None:
            logger.warning(
                "Token response did not include a refresh token; re-authorization "
                "will be required when the access token expires"
            )
        logger.info("Authorization code exchanged (scopes=%s)", " ".join(credential.scope))
        return credential

    async def refresh(self, credential: Credential) -> Credential:
        """Use *credential*'s refresh token to obtain a new access token.

        Raises
        ------
        ReauthenticationRequiredError
            If there is no refresh token or the refresh fails for any reason.
        """
        if not credential.refresh_token:
            raise ReauthenticationRequiredError(
                "Access token expired and no refresh token is available"
            )

        issued_at = self._clock()
        try:
            response = await self._post(
                {
                    "client_id": self._oauth.client_id,
                    "client_secret": self._oauth.client_secret,
                    "refresh_token": credential.refresh_token,
                    "grant_type": "refresh_token",
                }
            )
        except httpx.HTTPError as exc:
            raise ReauthenticationRequiredError(
                f"Token refresh request failed: {redact_credential_values(str(exc))}"
            ) from exc

        payload = _json_object(response)
        if response.status_code < 200 or response.status_code >= 300 or payload is None:
            raise ReauthenticationRequiredError(
                f"Token refresh failed ({response.status_code}): {safe_error_message(response)}"
            )
        if payload.get("error"):
            raise ReauthenticationRequiredError(
                f"Token refresh failed: {sanitize_provider_error(str(payload['error']))}"
            )

        try:
            refreshed = Credential.from_token_response(
                payload, issued_at=issued_at, previous=credential
            )
        except (PydanticValidationError, ValueError) as exc:
            raise ReauthenticationRequiredError(
                "Token refresh response is missing a non-empty access_token"
            ) from exc

        logger.info("Access token refreshed (expires_at=%s)", refreshed.expires_at.isoformat())
        return refreshed

    async def revoke(self, token: str) -> bool:
        """Best-effort token revocation. Returns True when Google accepted it."""
        try:
            response = await self._http_client.post(
                GOOGLE_REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Token revocation failed: %s", redact_credential_values(str(exc)))
            return False
        return 200 <= response.status_code < 300


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def scopes_granted(credential: Credential, required: Sequence[str]) -> bool:
    """Return True when every scope in *required* was granted."""
    granted = set(credential.scope)
    return all(scope in granted for scope in required)
