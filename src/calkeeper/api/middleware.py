"""API error handling: one translation table from error kind to response.

Every ``CalkeeperError`` raised by a route is turned into the standard
``{"error": {"code": "...", "message": "..."}}`` envelope.  The message is a
fixed, user-facing string; the exception text is logged server side and is
only added to the response (as ``detail``) when ``web.debug`` is enabled.

Anything that is not a ``CalkeeperError`` is caught by
``CatchAllErrorMiddleware`` and reported as a 500.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calkeeper.api.models import ErrorDetail, ErrorResponse
from calkeeper.errors import (
    AuthorizationError,
    CalkeeperError,
    ConfigurationError,
    CorruptedCredentialError,
    CsrfStateError,
    CsrfTokenError,
    DecryptionError,
    InvalidKeyError,
    MissingCredentialError,
    NoCalendarSelectedError,
    PathTraversalError,
    ReauthenticationRequiredError,
    RemoteServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorTranslation:
    status_code: int
    code: str
    message: str
    log_level: int = logging.INFO


ERROR_TRANSLATIONS: dict[type[CalkeeperError], ErrorTranslation] = {
    ValidationError: ErrorTranslation(400, "VALIDATION_ERROR", "The request data is invalid."),
    NoCalendarSelectedError: ErrorTranslation(
        400, "NO_CALENDAR_SELECTED", "No calendar has been selected."
    ),
    CsrfStateError: ErrorTranslation(
        400,
        "INVALID_STATE",
        "Invalid or expired OAuth state. Please restart the authorization flow.",
        logging.WARNING,
    ),
    AuthorizationError: ErrorTranslation(
        400, "AUTHORIZATION_FAILED", "Authorization failed. Please restart the flow."
    ),
    MissingCredentialError: ErrorTranslation(
        401, "NOT_AUTHENTICATED", "Not authenticated. Please authorize access."
    ),
    ReauthenticationRequiredError: ErrorTranslation(
        401, "REAUTHENTICATION_REQUIRED", "Authorization expired. Please authorize again."
    ),
    CsrfTokenError: ErrorTranslation(
        403, "CSRF_REJECTED", "Invalid or missing CSRF token.", logging.WARNING
    ),
    RemoteServiceError: ErrorTranslation(
        502, "REMOTE_SERVICE_ERROR", "The calendar service request failed.", logging.WARNING
    ),
    PathTraversalError: ErrorTranslation(
        500, "SERVER_MISCONFIGURED", "Server configuration error.", logging.ERROR
    ),
    ConfigurationError: ErrorTranslation(
        500, "SERVER_MISCONFIGURED", "Server configuration error.", logging.ERROR
    ),
    InvalidKeyError: ErrorTranslation(
        500, "SERVER_MISCONFIGURED", "Server configuration error.", logging.ERROR
    ),
    CorruptedCredentialError: ErrorTranslation(
        500, "CREDENTIAL_UNAVAILABLE", "Stored credential is unusable.", logging.ERROR
    ),
    DecryptionError: ErrorTranslation(
        500, "CREDENTIAL_UNAVAILABLE", "Stored credential is unusable.", logging.ERROR
    ),
}

_FALLBACK = ErrorTranslation(500, "INTERNAL_ERROR", "Internal server error", logging.ERROR)


def translate_error(exc: CalkeeperError) -> ErrorTranslation:
    """Return the translation for *exc*, walking its MRO for subclasses."""
    for cls in type(exc).__mro__:
        translation = ERROR_TRANSLATIONS.get(cls)
        if translation is not None:
            return translation
    return _FALLBACK


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_calkeeper_error(request: Request, exc: CalkeeperError) -> JSONResponse:
    translation = translate_error(exc)
    logger.log(
        translation.log_level,
        "%s on %s %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc,
    )
    debug = bool(getattr(request.app.state, "debug", False))
    return _error_response(
        translation.status_code,
        translation.code,
        translation.message,
        str(exc) if debug else None,
    )


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 400 in the standard envelope for malformed request bodies or queries."""
    logger.info("Request validation failed on %s %s", request.method, request.url.path)
    debug = bool(getattr(request.app.state, "debug", False))
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    translation = ERROR_TRANSLATIONS[ValidationError]
    return _error_response(
        translation.status_code,
        translation.code,
        translation.message,
        detail if debug else None,
    )


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, _FALLBACK.code, _FALLBACK.message)


def register_error_handlers(app: FastAPI) -> None:
    """Attach the error translation handler and the catch-all middleware."""
    app.add_exception_handler(CalkeeperError, _handle_calkeeper_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        RequestValidationError, _handle_request_validation  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
