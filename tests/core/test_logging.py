"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest
import structlog

from calkeeper.core.logging import (
    _NOISE_LOGGERS,
    LOG_DIR_MODE,
    LOG_FILE_MODE,
    CredentialRedactionFilter,
    configure_logging,
    file_log_sink,
)
from calkeeper.errors import PathTraversalError

pytestmark = pytest.mark.unit


def _file_handlers() -> list[logging.FileHandler]:
    return [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_error(self):
        configure_logging(level="chatty")
        assert logging.getLogger().level == logging.ERROR

    def test_reconfiguration_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_console_handler_redacts(self):
        configure_logging()
        handler = logging.getLogger().handlers[0]
        assert any(isinstance(f, CredentialRedactionFilter) for f in handler.filters)


# ---------------------------------------------------------------------------
# Log file
# ---------------------------------------------------------------------------


class TestLogFile:
    def test_file_handler_created_with_modes(self, tmp_path: Path):
        resolved = configure_logging(log_path="logs/calendar.log", application_root=tmp_path)
        assert resolved == (tmp_path / "logs" / "calendar.log").resolve()
        assert len(_file_handlers()) == 1
        assert (os.stat(resolved).st_mode & 0o777) == LOG_FILE_MODE
        assert (os.stat(resolved.parent).st_mode & 0o777) == LOG_DIR_MODE

    def test_file_handler_always_json(self, tmp_path: Path):
        configure_logging(fmt="text", log_path="logs/c.log", application_root=tmp_path)
        formatter = _file_handlers()[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_json_output_is_valid_and_redacted(self, tmp_path: Path):
        resolved = configure_logging(
            level="INFO", log_path="logs/c.log", application_root=tmp_path
        )
        logging.getLogger("calkeeper.test").info(
            "refresh with refresh_token=1//secret-value", extra={"calendar_id": "primary"}
        )
        for handler in _file_handlers():
            handler.flush()

        data = json.loads(resolved.read_text().strip().splitlines()[-1])
        assert "1//secret-value" not in data["event"]
        assert data["calendar_id"] == "primary"
        assert data["level"] == "info"

    @pytest.mark.parametrize("log_path", ["../escape.log", "calendar.log", "other/c.log"])
    def test_path_outside_logs_dir_refused(self, tmp_path: Path, log_path):
        with pytest.raises(PathTraversalError):
            configure_logging(log_path=log_path, application_root=tmp_path)


class TestFileLogSink:
    def test_handler_removed_on_exit(self, tmp_path: Path):
        configure_logging()
        with file_log_sink("logs/web.log", tmp_path) as resolved:
            assert len(_file_handlers()) == 1
            logging.getLogger("calkeeper.test").warning("inside sink")
        assert _file_handlers() == []
        assert "inside sink" in resolved.read_text()


# ---------------------------------------------------------------------------
# CredentialRedactionFilter
# ---------------------------------------------------------------------------


class TestCredentialRedactionFilter:
    def _make_record(self, msg: str, *args) -> logging.LogRecord:
        return logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg=msg,
            args=args,
            exc_info=None,
        )

    def test_bearer_token_in_message(self):
        record = self._make_record("Authorization: Bearer ya29.a0Abc-def_123")
        assert CredentialRedactionFilter().filter(record) is True
        assert "ya29" not in record.getMessage()
        assert "[REDACTED]" in record.getMessage()

    def test_token_in_args(self):
        record = self._make_record("body: %s", "access_token=ya29.leak&expires_in=3600")
        CredentialRedactionFilter().filter(record)
        assert "ya29.leak" not in record.getMessage()
        assert "expires_in=3600" in record.getMessage()

    def test_sensitive_extra_fields(self):
        record = self._make_record("saved")
        record.refresh_token = "1//abc"
        record.calendar_id = "primary"
        CredentialRedactionFilter().filter(record)
        assert record.refresh_token == "[REDACTED]"
        assert record.calendar_id == "primary"

    def test_plain_message_untouched(self):
        record = self._make_record("Retrieved %d calendars", 3)
        CredentialRedactionFilter().filter(record)
        assert record.getMessage() == "Retrieved 3 calendars"
