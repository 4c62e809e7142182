"""Shared test fixtures for the calkeeper test suite.

Remote Google endpoints are replaced by ``FakeGoogle``, an
``httpx.MockTransport`` handler that records every request and answers from
queued token responses and per-route calendar API responses.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest

from calkeeper.config import (
    CalendarConfig,
    CalendarSettings,
    OAuthConfig,
    StorageConfig,
)
from calkeeper.credential_store import Credential, CredentialStore
from calkeeper.security.cipher import generate_key

TEST_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
TEST_CLIENT_SECRET = "test-client-secret"
TEST_REDIRECT_URI = "http://localhost:8000/api/oauth/callback"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
API_PREFIX = "/calendar/v3"


# ---------------------------------------------------------------------------
# Logging isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop handlers installed by configure_logging() or the CLI between tests."""
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Settable UTC clock usable wherever a ``Callable[[], datetime]`` is expected."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Fake Google
# ---------------------------------------------------------------------------


def token_response(
    access_token: str = "ya29.fresh-access",
    *,
    refresh_token: str | None = "1//refresh-token",
    expires_in: int = 3600,
    scope: str = CALENDAR_SCOPE,
) -> httpx.Response:
    payload: dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "scope": scope,
        "token_type": "Bearer",
    }
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    return httpx.Response(200, json=payload)


class FakeGoogle:
    """Records requests and serves token and calendar API responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_responses: list[httpx.Response | Exception] = []
        self.routes: dict[tuple[str, str], Any] = {}

    def route(self, method: str, path: str, response: Any) -> None:
        """Register *response* (an ``httpx.Response`` or a callable) for a calendar API path."""
        self.routes[(method, f"{API_PREFIX}{path}")] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if request.url.path == "/revoke":
                return httpx.Response(200)
            if not self.token_responses:
                return httpx.Response(400, json={"error": "invalid_grant"})
            queued = self.token_responses.pop(0)
            if isinstance(queued, Exception):
                raise queued
            return queued

        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        if isinstance(route, Exception):
            raise route
        return route(request) if callable(route) else route

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/token"]

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == "www.googleapis.com"]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(google: FakeGoogle):
    async with google.client() as client:
        yield client


# ---------------------------------------------------------------------------
# Configuration / storage
# ---------------------------------------------------------------------------


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    root.mkdir()
    return root


@pytest.fixture
def encryption_key() -> bytes:
    return generate_key()


@pytest.fixture
def make_config(app_root: Path, encryption_key: bytes) -> Callable[..., CalendarConfig]:
    def _make(**calendar_overrides: Any) -> CalendarConfig:
        return CalendarConfig(
            oauth=OAuthConfig(
                client_id=TEST_CLIENT_ID,
                client_secret=TEST_CLIENT_SECRET,
                redirect_uri=TEST_REDIRECT_URI,
                scopes=(CALENDAR_SCOPE,),
            ),
            storage=StorageConfig(
                application_root=app_root,
                token_path="token/token.json",
                encryption_key=encryption_key,
            ),
            calendar=CalendarSettings(**calendar_overrides),
        )

    return _make


@pytest.fixture
def config(make_config) -> CalendarConfig:
    return make_config()


@pytest.fixture
def store(config: CalendarConfig, clock: FakeClock) -> CredentialStore:
    return CredentialStore(config.storage, clock=clock)


@pytest.fixture
def make_credential(clock: FakeClock) -> Callable[..., Credential]:
    def _make(
        *,
        access_token: str = "ya29.stored-access",
        refresh_token: str | None = "1//refresh-token",
        expires_in: int = 3600,
    ) -> Credential:
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=clock() + timedelta(seconds=expires_in),
            scope=[CALENDAR_SCOPE],
        )

    return _make
