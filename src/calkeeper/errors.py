"""Error taxonomy for calkeeper.

Every failure that leaves a calkeeper component is one of the kinds below.
Messages are safe to log: they never contain token values or key material.

Kinds and their intended handling:

- ``ConfigurationError``: fatal, raised while constructing a component.
- ``PathTraversalError``: fatal, the file operation is refused.
- ``InvalidKeyError`` / ``DecryptionError`` / ``CorruptedCredentialError``:
  fatal for that operation; the stored credential is treated as absent.
- ``MissingCredentialError``: normal "not yet authenticated" signal.
- ``AuthorizationError`` / ``ReauthenticationRequiredError``: the user must
  run the authorization flow again.
- ``NoCalendarSelectedError`` / ``ValidationError``: caller input errors.
- ``RemoteServiceError``: any transport or API failure.
- ``CsrfStateError`` / ``CsrfTokenError``: the request is rejected.
"""

from __future__ import annotations


class CalkeeperError(Exception):
    """Base class for all calkeeper errors."""


class ConfigurationError(CalkeeperError):
    """Raised when configuration is missing, malformed, or invalid."""


class PathTraversalError(CalkeeperError):
    """Raised when a configured file path escapes its allowed directory."""


class InvalidKeyError(CalkeeperError):
    """Raised when an encryption key is not exactly 32 bytes."""


class DecryptionError(CalkeeperError):
    """Raised when an encrypted payload is malformed or fails authentication."""


class CorruptedCredentialError(CalkeeperError):
    """Raised when a stored credential cannot be decrypted or parsed."""


class MissingCredentialError(CalkeeperError):
    """Raised when no credential has been stored yet."""


class AuthorizationError(CalkeeperError):
    """Raised when the authorization-code exchange fails."""


class ReauthenticationRequiredError(CalkeeperError):
    """Raised when the credential is gone or cannot be refreshed."""


class NoCalendarSelectedError(CalkeeperError):
    """Raised when an event operation runs before a calendar is selected."""


class ValidationError(CalkeeperError):
    """Raised when caller-supplied data is incomplete or malformed."""


class RemoteServiceError(CalkeeperError):
    """Raised when a call to the remote calendar service fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.detail = message
        super().__init__(message)


class CsrfStateError(CalkeeperError):
    """Raised when the OAuth ``state`` parameter does not match the session."""


class CsrfTokenError(CalkeeperError):
    """Raised when a mutating request carries no valid CSRF token."""
