"""Pydantic response models for the calkeeper web API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    detail: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# OAuth / session
# ---------------------------------------------------------------------------


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class OAuthStartResponse(BaseModel):
    """Authorization URL the user should visit, plus the state bound to the session."""

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Authorization complete. Credential stored."
    provider: str = "google"
    scope: str | None = None


class OAuthStatusResponse(BaseModel):
    """Credential status; never carries token values."""

    authenticated: bool
    state: str
    scopes_granted: bool
    calendar_id: str | None = None


class LogoutResponse(BaseModel):
    success: bool = True


class DeleteEventResponse(BaseModel):
    deleted: bool = True
    event_id: str
