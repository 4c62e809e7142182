"""File-backed cache for the calendar list.

The calendar list changes rarely, so ``CalendarSession.get_calendars`` can
serve it from a small JSON file for ``ttl_seconds`` before asking Google
again.  The file lives below a ``cache`` directory inside the application
root and is written owner-only.  The path is re-validated before every
access.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from calkeeper.config import CalendarConfig
from calkeeper.security.paths import ensure_private_dir, resolve_path

logger = logging.getLogger(__name__)

CACHE_SUBDIR = "cache"


class CalendarListCache:
    """TTL-bounded JSON cache of ``get_calendars()`` results."""

    def __init__(
        self,
        path: str | os.PathLike[str],
        application_root: str | os.PathLike[str],
        ttl_seconds: int,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._candidate = path
        self._application_root = application_root
        self._resolve()
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_config(cls, config: CalendarConfig) -> CalendarListCache:
        return cls(config.cache.path, config.storage.application_root, config.cache.ttl_seconds)

    def _resolve(self) -> Path:
        return resolve_path(self._candidate, CACHE_SUBDIR, self._application_root)

    @property
    def path(self) -> Path:
        return self._resolve()

    def get(self) -> list[dict[str, Any]] | None:
        """Return cached calendars, or None when absent, stale or unreadable."""
        path = self._resolve()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable calendar cache at %s: %s", path, exc)
            return None

        if not isinstance(payload, dict) or not isinstance(payload.get("calendars"), list):
            return None
        stored_at = payload.get("stored_at")
        if not isinstance(stored_at, int | float):
            return None
        if self._clock() - stored_at > self._ttl_seconds:
            return None
        return payload["calendars"]

    def put(self, calendars: list[dict[str, Any]]) -> None:
        path = self._resolve()
        directory = path.parent
        ensure_private_dir(directory, 0o700)
        data = json.dumps({"stored_at": self._clock(), "calendars": calendars})

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.fchmod(handle.fileno(), 0o600)
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def clear(self) -> None:
        try:
            self._resolve().unlink()
        except FileNotFoundError:
            pass
