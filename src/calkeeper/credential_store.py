"""Encrypted-at-rest persistence of the OAuth credential.

The credential is serialized to canonical JSON, encrypted with
:class:`~calkeeper.security.cipher.TokenCipher` when a key is configured, and
written to a path validated by :func:`~calkeeper.security.paths.resolve_path`
(which must sit below a ``token`` directory inside the application root).

On-disk JSON::

    {
      "access_token": "...",
      "expires_in": 3599,
      "expiry": "2026-01-01T12:00:00Z",
      "refresh_token": "...",
      "scope": "https://www.googleapis.com/auth/calendar",
      "token_type": "Bearer"
    }

Writes go to a temporary file in the same directory followed by
``os.replace``, so a crash mid-write leaves either the old file or the new
one, never a truncated blob.  The path is re-validated before every read,
write and lock.  ``locked()`` serializes writers across processes with an
advisory ``flock`` on a sidecar ``.lock`` file; coroutines use
``async_locked()`` instead, which queues them on an ``asyncio.Lock`` and
waits for the flock without blocking the event loop.

Usage::

    store = CredentialStore(config.storage)
    try:
        credential = store.load()
    except MissingCredentialError:
        credential = None
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from calkeeper.config import StorageConfig
from calkeeper.errors import (
    CorruptedCredentialError,
    DecryptionError,
    MissingCredentialError,
)
from calkeeper.security.cipher import TokenCipher
from calkeeper.security.paths import ensure_private_dir, resolve_path

logger = logging.getLogger(__name__)

TOKEN_SUBDIR = "token"
FILE_MODE = 0o600
DIR_MODE = 0o700
DEFAULT_EXPIRES_IN_SECONDS = 3600
LOCK_POLL_SECONDS = 0.05


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _format_expiry(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_expiry(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class Credential(BaseModel):
    """OAuth bearer credential with its server-derived expiry."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    scope: list[str] = Field(default_factory=list)
    token_type: str = "Bearer"

    @field_validator("access_token")
    @classmethod
    def _normalize_access_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must be a non-empty string")
        return normalized

    @field_validator("refresh_token")
    @classmethod
    def _normalize_refresh_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("expires_at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        *,
        issued_at: datetime | None = None,
        previous: Credential | None = None,
    ) -> Credential:
        """Build a credential from a token-endpoint response.

        ``expires_at`` is ``issued_at + expires_in``.  A refresh response that
        omits ``refresh_token`` (or ``scope``) keeps the value from *previous*.
        """
        issued = issued_at or _utcnow()
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))

        raw_scope = payload.get("scope")
        if raw_scope is None and previous is not None:
            scope = list(previous.scope)
        else:
            scope = _split_scope(raw_scope)

        refresh_token = payload.get("refresh_token")
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token

        return cls(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=refresh_token,
            expires_at=issued + timedelta(seconds=expires_in),
            scope=scope,
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    def is_expired(self, *, now: datetime | None = None, skew_seconds: int = 0) -> bool:
        current = now or _utcnow()
        return current >= self.expires_at - timedelta(seconds=skew_seconds)

    def to_storage_dict(self, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or _utcnow()
        remaining = int((self.expires_at - current).total_seconds())
        return {
            "access_token": self.access_token,
            "expires_in": max(remaining, 0),
            "expiry": _format_expiry(self.expires_at),
            "refresh_token": self.refresh_token,
            "scope": " ".join(self.scope),
            "token_type": self.token_type,
        }

    @classmethod
    def from_storage_dict(cls, payload: dict[str, Any]) -> Credential:
        expiry = payload.get("expiry")
        if not isinstance(expiry, str) or not expiry.strip():
            raise ValueError("stored credential is missing 'expiry'")
        return cls(
            access_token=payload.get("access_token") or "",
            refresh_token=payload.get("refresh_token"),
            expires_at=_parse_expiry(expiry),
            scope=_split_scope(payload.get("scope")),
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    def __repr__(self) -> str:
        return (
            f"Credential(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"scope={self.scope!r}, token_type={self.token_type!r})"
        )

    __str__ = __repr__


def _split_scope(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [part for part in raw.split() if part]
    if isinstance(raw, list):
        return [str(part).strip() for part in raw if str(part).strip()]
    raise ValueError("scope must be a string or a list of strings")


class CredentialStore:
    """Load and save the credential file through PathGuard and TokenCipher."""

    def __init__(
        self,
        storage: StorageConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._token_path = storage.token_path
        self._application_root = storage.application_root
        path = self._resolve()
        self._cipher = TokenCipher(storage.encryption_key) if storage.encryption_key else None
        self._clock = clock
        self._lock_depth = 0
        # Serializes coroutines sharing this store; flock only separates processes.
        self._async_lock = asyncio.Lock()
        if self._cipher is None:
            logger.warning(
                "No encryption key configured: OAuth tokens will be stored in PLAINTEXT at %s",
                path,
            )

    def _resolve(self) -> Path:
        return resolve_path(self._token_path, TOKEN_SUBDIR, self._application_root)

    @property
    def path(self) -> Path:
        return self._resolve()

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    def exists(self) -> bool:
        return self._resolve().is_file()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _encode(self, credential: Credential) -> bytes:
        payload = json.dumps(
            credential.to_storage_dict(now=self._clock()),
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
        if self._cipher is None:
            return payload
        return self._cipher.encrypt(payload).encode("ascii")

    def _decode(self, raw: bytes) -> Credential:
        if self._cipher is not None:
            try:
                raw = self._cipher.decrypt(raw.strip())
            except DecryptionError as exc:
                logger.error("Failed to decrypt stored credential: %s", exc)
                raise CorruptedCredentialError("Failed to decrypt stored credential") from exc

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptedCredentialError("Stored credential is not valid JSON") from exc

        if not isinstance(payload, dict):
            raise CorruptedCredentialError("Stored credential must be a JSON object")

        try:
            return Credential.from_storage_dict(payload)
        except (PydanticValidationError, ValueError) as exc:
            raise CorruptedCredentialError(f"Stored credential is malformed: {exc}") from exc

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold an exclusive advisory lock on the credential file.

        Re-entrant within one store instance, so ``save()`` may be called
        while the caller already holds the lock for a reload-refresh-save
        sequence.
        """
        if self._lock_depth:
            with self._reentered():
                yield
            return

        fd = self._open_lock_file()
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except BaseException:
            os.close(fd)
            raise
        with self._held(fd):
            yield

    @asynccontextmanager
    async def async_locked(self) -> AsyncIterator[None]:
        """Async form of :meth:`locked` for coroutines sharing this store.

        Coroutines queue on an ``asyncio.Lock``.  The flock is then polled
        without blocking, so a lock held by another process suspends only the
        waiting coroutine and never the event loop.
        """
        async with self._async_lock:
            if self._lock_depth:
                with self._reentered():
                    yield
                return

            fd = self._open_lock_file()
            try:
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        await asyncio.sleep(LOCK_POLL_SECONDS)
            except BaseException:
                os.close(fd)
                raise
            with self._held(fd):
                yield

    def _open_lock_file(self) -> int:
        path = self._resolve()
        ensure_private_dir(path.parent, DIR_MODE)
        return os.open(path.with_name(f"{path.name}.lock"), os.O_RDWR | os.O_CREAT, FILE_MODE)

    @contextmanager
    def _reentered(self) -> Iterator[None]:
        self._lock_depth += 1
        try:
            yield
        finally:
            self._lock_depth -= 1

    @contextmanager
    def _held(self, fd: int) -> Iterator[None]:
        self._lock_depth = 1
        try:
            yield
        finally:
            self._lock_depth = 0
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> Credential:
        """Read, decrypt and parse the stored credential.

        Raises
        ------
        MissingCredentialError
            If no credential file exists.
        CorruptedCredentialError
            If the file cannot be decrypted or parsed.
        """
        path = self._resolve()
        try:
            raw = path.read_bytes()
        except FileNotFoundError as exc:
            raise MissingCredentialError("No stored credential") from exc

        if not raw.strip():
            raise CorruptedCredentialError("Stored credential file is empty")

        credential = self._decode(raw)
        logger.debug("Loaded stored credential from %s", path)
        return credential

    def save(self, credential: Credential) -> None:
        """Atomically persist *credential* with owner-only permissions."""
        with self.locked():
            self._write(credential)

    def _write(self, credential: Credential) -> None:
        data = self._encode(credential)
        path = self._resolve()
        directory = path.parent
        ensure_private_dir(directory, DIR_MODE)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "wb") as handle:
                os.fchmod(handle.fileno(), FILE_MODE)
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        os.chmod(path, FILE_MODE)
        if self._cipher is None:
            logger.warning("Saved OAuth credential UNENCRYPTED to %s", path)
        else:
            logger.debug("Saved encrypted credential to %s", path)

    def delete(self) -> bool:
        """Remove the stored credential. Returns True when a file was removed."""
        with self.locked():
            path = self._resolve()
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Deleted stored credential at %s", path)
        return True
