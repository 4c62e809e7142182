"""Structured logging for calkeeper.

Uses structlog's ProcessorFormatter so every existing
``logging.getLogger(__name__)`` call site is rendered consistently.

Two console formats:
- ``text``: colored, human-readable output (default)
- ``json``: JSON lines

An optional log file (``[logging] path``) must live below a ``logs``
directory inside the application root; it is always written as JSON lines,
the directory is created ``0750`` and the file ``0640``.

Every handler installed here carries :class:`CredentialRedactionFilter`, so a
token that slips into a log message or ``extra`` field is masked before it
is rendered.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from calkeeper.security.paths import resolve_path

LOG_SUBDIR = "logs"
LOG_DIR_MODE = 0o750
LOG_FILE_MODE = 0o640

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_SENSITIVE_KEYS = frozenset(
    {"access_token", "refresh_token", "client_secret", "code", "encryption_key", "csrf_token"}
)
_SECRET_PATTERNS = (
    re.compile(r"(?i)\b(access_token|refresh_token|client_secret)(\s*[=:]\s*)([^\s,;&'\"]+)"),
    re.compile(r"(?i)\b(Bearer)(\s+)([A-Za-z0-9._\-~+/]+=*)"),
)


def _redact_text(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1\2[REDACTED]", text)
    return text


class CredentialRedactionFilter(logging.Filter):
    """Mask token values in log messages and ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _redact_text(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: _redact_text(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            else:
                record.args = tuple(
                    _redact_text(a) if isinstance(a, str) else a for a in record.args
                )
        for key in _SENSITIVE_KEYS:
            if key in record.__dict__ and record.__dict__[key] is not None:
                record.__dict__[key] = "[REDACTED]"
        return True


# ---------------------------------------------------------------------------
# Processors / handlers
# ---------------------------------------------------------------------------


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path* with group-readable permissions."""
    ensure_log_dir(path.parent)
    if not path.exists():
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, LOG_FILE_MODE)
        os.close(fd)
    os.chmod(path, LOG_FILE_MODE)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    handler.addFilter(CredentialRedactionFilter())
    return handler


def ensure_log_dir(directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    os.chmod(directory, LOG_DIR_MODE)


def resolve_log_path(path: str | Path, application_root: Path) -> Path:
    """Validate a configured log file location (must sit below ``logs/``)."""
    return resolve_path(path, LOG_SUBDIR, application_root)


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_path: str | Path | None = None,
    application_root: Path | None = None,
) -> Path | None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").  Unknown levels
        fall back to ERROR.
    fmt:
        Console format: ``"text"`` for colored output, ``"json"`` for JSON lines.
    log_path:
        Optional log file, validated against *application_root*.
    application_root:
        Root for path validation; defaults to the current directory.

    Returns
    -------
    Path | None
        The resolved log file path, when a file handler was installed.

    Raises
    ------
    PathTraversalError
        If *log_path* escapes the application root or the ``logs`` directory.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CredentialRedactionFilter())

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.ERROR))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    resolved: Path | None = None
    if log_path is not None:
        resolved = resolve_log_path(log_path, application_root or Path.cwd())
        root.addHandler(_make_file_handler(resolved, _build_processors(time_fmt="iso")))

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return resolved


@contextmanager
def file_log_sink(path: str | Path, application_root: Path) -> Iterator[Path]:
    """Temporarily attach a JSON file handler to the root logger.

    The handler is removed and closed on exit, so tests and short-lived
    commands do not leak file descriptors.
    """
    resolved = resolve_log_path(path, application_root)
    handler = _make_file_handler(resolved, _build_processors(time_fmt="iso"))
    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield resolved
    finally:
        root.removeHandler(handler)
        handler.close()
