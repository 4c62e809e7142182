"""Tests for the OAuth token client and helpers.

Remote calls go through ``httpx.MockTransport`` (see ``FakeGoogle`` in
conftest) so no real Google endpoint is contacted.
"""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calkeeper.errors import AuthorizationError, ReauthenticationRequiredError
from calkeeper.oauth import (
    GOOGLE_AUTH_URL,
    OAuthTokenClient,
    build_authorization_url,
    redact_credential_values,
    safe_error_message,
    sanitize_provider_error,
    scopes_granted,
)
from tests.conftest import TEST_CLIENT_SECRET, token_response

pytestmark = pytest.mark.unit


@pytest.fixture
def oauth_client(config, http_client, clock) -> OAuthTokenClient:
    return OAuthTokenClient(config.oauth, http_client, clock=clock)


class TestAuthorizationUrl:
    def test_contains_offline_consent_parameters(self, config):
        url = build_authorization_url(config.oauth, state="xyz")
        assert url.startswith(GOOGLE_AUTH_URL)
        params = parse_qs(urlparse(url).query)
        assert params["client_id"] == [config.oauth.client_id]
        assert params["redirect_uri"] == [config.oauth.redirect_uri]
        assert params["response_type"] == ["code"]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["include_granted_scopes"] == ["true"]
        assert params["state"] == ["xyz"]
        assert params["scope"] == [" ".join(config.oauth.scopes)]

    def test_never_contains_client_secret(self, config):
        assert TEST_CLIENT_SECRET not in build_authorization_url(config.oauth)


class TestExchangeCode:
    async def test_success(self, oauth_client, google, clock):
        google.token_responses.append(token_response("ya29.new", expires_in=3599))
        credential = await oauth_client.exchange_code("4/auth-code")

        assert credential.access_token == "ya29.new"
        assert credential.refresh_token == "1//refresh-token"
        assert credential.expires_at == clock() + timedelta(seconds=3599)

        (request,) = google.token_requests
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["4/auth-code"]
        assert form["client_secret"] == [TEST_CLIENT_SECRET]

    async def test_error_field_raises_authorization_error(self, oauth_client, google):
        google.token_responses.append(
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad code"})
        )
        with pytest.raises(AuthorizationError, match="Bad code"):
            await oauth_client.exchange_code("4/expired")

    async def test_error_field_with_200_still_fails(self, oauth_client, google):
        google.token_responses.append(httpx.Response(200, json={"error": "access_denied"}))
        with pytest.raises(AuthorizationError):
            await oauth_client.exchange_code("4/code")

    async def test_non_json_body(self, oauth_client, google):
        google.token_responses.append(httpx.Response(502, text="<html>bad gateway</html>"))
        with pytest.raises(AuthorizationError, match="502"):
            await oauth_client.exchange_code("4/code")

    async def test_missing_access_token(self, oauth_client, google):
        google.token_responses.append(httpx.Response(200, json={"expires_in": 3600}))
        with pytest.raises(AuthorizationError, match="access_token"):
            await oauth_client.exchange_code("4/code")

    async def test_transport_error(self, oauth_client, google):
        google.token_responses.append(httpx.ConnectTimeout("timed out"))
        with pytest.raises(AuthorizationError, match="Network error"):
            await oauth_client.exchange_code("4/code")

    async def test_empty_code_makes_no_request(self, oauth_client, google):
        with pytest.raises(AuthorizationError):
            await oauth_client.exchange_code("   ")
        assert google.requests == []


class TestRefresh:
    async def test_success_keeps_refresh_token(self, oauth_client, google, make_credential, clock):
        google.token_responses.append(token_response("ya29.refreshed", refresh_token=None))
        current = make_credential(refresh_token="1//long-lived")
        refreshed = await oauth_client.refresh(current)

        assert refreshed.access_token == "ya29.refreshed"
        assert refreshed.refresh_token == "1//long-lived"
        assert refreshed.expires_at == clock() + timedelta(seconds=3600)
        form = parse_qs(google.token_requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["1//long-lived"]

    async def test_no_refresh_token(self, oauth_client, google, make_credential):
        with pytest.raises(ReauthenticationRequiredError):
            await oauth_client.refresh(make_credential(refresh_token=None))
        assert google.requests == []

    async def test_revoked_refresh_token(self, oauth_client, google, make_credential):
        google.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(ReauthenticationRequiredError):
            await oauth_client.refresh(make_credential())

    async def test_transport_error(self, oauth_client, google, make_credential):
        google.token_responses.append(httpx.ReadTimeout("slow"))
        with pytest.raises(ReauthenticationRequiredError):
            await oauth_client.refresh(make_credential())

    async def test_error_message_does_not_leak_token(self, oauth_client, google, make_credential):
        google.token_responses.append(
            httpx.Response(500, text="upstream said refresh_token=1//leaky")
        )
        with pytest.raises(ReauthenticationRequiredError) as exc_info:
            await oauth_client.refresh(make_credential())
        assert "1//leaky" not in str(exc_info.value)


class TestRevoke:
    async def test_revoke_posts_token(self, oauth_client, google):
        assert await oauth_client.revoke("1//refresh") is True
        assert google.requests[0].url.path == "/revoke"


class TestHelpers:
    def test_known_provider_error(self):
        assert "denied" in sanitize_provider_error("access_denied")

    def test_unknown_provider_error_is_generic(self):
        message = sanitize_provider_error("<script>alert(1)</script>")
        assert "script" not in message

    @pytest.mark.parametrize(
        "message",
        [
            "refresh_token=1//abc123",
            'payload {"access_token": "ya29.abc123"}',
            "Authorization: Bearer ya29.abc123",
            "client_secret=abc123&x=1",
        ],
    )
    def test_redact_credential_values(self, message):
        assert "abc123" not in redact_credential_values(message)

    def test_safe_error_message_prefers_google_message(self):
        response = httpx.Response(
            403, json={"error": {"code": 403, "message": "Rate   limit\nexceeded"}}
        )
        assert safe_error_message(response) == "Rate limit exceeded"

    def test_scopes_granted(self, make_credential):
        credential = make_credential()
        assert scopes_granted(credential, credential.scope) is True
        assert scopes_granted(credential, ["https://www.googleapis.com/auth/gmail"]) is False
