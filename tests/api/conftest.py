"""Shared fixtures for calkeeper web API tests.

The app is driven in-process through ``httpx.ASGITransport``; its outbound
Google traffic goes to the ``FakeGoogle`` transport from the root conftest.
Cookies are issued without the ``Secure`` flag so the plain-http test
client sends them back.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi import FastAPI

from calkeeper.api.app import create_app
from calkeeper.config import CalendarConfig, WebConfig
from calkeeper.credential_store import Credential, CredentialStore
from tests.conftest import CALENDAR_SCOPE


@pytest.fixture
def web_config(config: CalendarConfig) -> CalendarConfig:
    config.web = WebConfig(secure_cookies=False)
    return config


@pytest.fixture
def app(web_config: CalendarConfig, http_client: httpx.AsyncClient) -> FastAPI:
    return create_app(web_config, http_client=http_client)


@pytest.fixture
async def client(app: FastAPI):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def authorized(web_config: CalendarConfig) -> Credential:
    """Store a credential valid for the next hour of wall-clock time."""
    credential = Credential(
        access_token="ya29.web-access",
        refresh_token="1//web-refresh",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
        scope=[CALENDAR_SCOPE],
    )
    CredentialStore(web_config.storage).save(credential)
    return credential


@pytest.fixture
def csrf_headers(client: httpx.AsyncClient):
    """Fetch the session's CSRF token and return it as request headers."""

    async def _headers() -> dict[str, str]:
        response = await client.get("/api/csrf-token")
        assert response.status_code == 200
        return {"X-CSRF-Token": response.json()["data"]["csrf_token"]}

    return _headers
