"""Tests for the calendar and event endpoints."""

from __future__ import annotations

import json

import httpx
import pytest

from calkeeper.api.app import create_app
from calkeeper.config import WebConfig

pytestmark = pytest.mark.unit

EVENT = {
    "id": "evt1",
    "summary": "Standup",
    "start": {"dateTime": "2026-01-16T09:00:00Z"},
    "end": {"dateTime": "2026-01-16T09:15:00Z"},
    "htmlLink": "https://calendar.google.com/event?eid=evt1",
}

DRAFT = {
    "summary": "Lunch",
    "start": {"dateTime": "2026-01-16T12:00:00Z"},
    "end": {"dateTime": "2026-01-16T13:00:00Z"},
}

RANGE = {"start": "2026-01-16T00:00:00Z", "end": "2026-01-17T00:00:00Z"}


class TestListCalendars:
    async def test_lists_calendars(self, client, google, authorized):
        google.route(
            "GET",
            "/users/me/calendarList",
            httpx.Response(
                200,
                json={"items": [{"id": "primary", "summary": "Me", "primary": True,
                                 "timeZone": "UTC"}]},
            ),
        )
        response = await client.get("/api/calendars")
        assert response.status_code == 200
        assert response.json()["data"] == [
            {"id": "primary", "summary": "Me", "description": None, "timeZone": "UTC",
             "primary": True}
        ]
        assert google.api_requests[0].headers["Authorization"] == "Bearer ya29.web-access"

    async def test_unauthenticated(self, client, google):
        response = await client.get("/api/calendars")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "REAUTHENTICATION_REQUIRED"
        assert google.requests == []

    async def test_remote_failure_is_502(self, client, google, authorized):
        google.route(
            "GET",
            "/users/me/calendarList",
            httpx.Response(500, json={"error": {"message": "backend error"}}),
        )
        response = await client.get("/api/calendars")
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "REMOTE_SERVICE_ERROR"
        assert "detail" not in response.json()["error"]

    async def test_debug_adds_detail(self, web_config, http_client, google, authorized):
        web_config.web = WebConfig(secure_cookies=False, debug=True)
        google.route(
            "GET",
            "/users/me/calendarList",
            httpx.Response(500, json={"error": {"message": "backend error"}}),
        )
        app = create_app(web_config, http_client=http_client)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            response = await c.get("/api/calendars")
        assert "backend error" in response.json()["error"]["detail"]


class TestListEvents:
    async def test_lists_events_with_count(self, client, google, authorized):
        google.route(
            "GET", "/calendars/primary/events", httpx.Response(200, json={"items": [EVENT]})
        )
        response = await client.get("/api/calendars/primary/events", params=RANGE)
        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["count"] == 1
        assert body["data"][0]["id"] == "evt1"
        assert body["data"][0]["htmlLink"] == EVENT["htmlLink"]

        params = google.api_requests[0].url.params
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"

    async def test_missing_range_is_400(self, client, authorized):
        response = await client.get("/api/calendars/primary/events")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_inverted_range_is_400(self, client, authorized):
        response = await client.get(
            "/api/calendars/primary/events",
            params={"start": RANGE["end"], "end": RANGE["start"]},
        )
        assert response.status_code == 400


class TestGetEvent:
    async def test_get_event(self, client, google, authorized):
        google.route("GET", "/calendars/primary/events/evt1", httpx.Response(200, json=EVENT))
        response = await client.get("/api/calendars/primary/events/evt1")
        assert response.status_code == 200
        assert response.json()["data"]["summary"] == "Standup"

    async def test_not_found_is_502(self, client, authorized):
        response = await client.get("/api/calendars/primary/events/missing")
        assert response.status_code == 502


class TestMutations:
    async def test_create_requires_csrf(self, client, google, authorized):
        response = await client.post("/api/calendars/primary/events", json=DRAFT)
        assert response.status_code == 403
        assert google.api_requests == []

    async def test_create_event(self, client, google, authorized, csrf_headers):
        google.route("POST", "/calendars/primary/events", httpx.Response(200, json=EVENT))
        response = await client.post(
            "/api/calendars/primary/events", json=DRAFT, headers=await csrf_headers()
        )
        assert response.status_code == 201
        assert response.json()["data"]["id"] == "evt1"
        assert json.loads(google.api_requests[0].content)["summary"] == "Lunch"

    async def test_create_invalid_draft(self, client, google, authorized, csrf_headers):
        response = await client.post(
            "/api/calendars/primary/events",
            json={"summary": "No times"},
            headers=await csrf_headers(),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert google.api_requests == []

    async def test_create_unauthenticated(self, client, csrf_headers):
        response = await client.post(
            "/api/calendars/primary/events", json=DRAFT, headers=await csrf_headers()
        )
        assert response.status_code == 401

    async def test_update_event(self, client, google, authorized, csrf_headers):
        google.route("GET", "/calendars/primary/events/evt1", httpx.Response(200, json=EVENT))
        google.route(
            "PUT",
            "/calendars/primary/events/evt1",
            lambda request: httpx.Response(200, json=json.loads(request.content)),
        )
        response = await client.patch(
            "/api/calendars/primary/events/evt1",
            json={"summary": "Renamed"},
            headers=await csrf_headers(),
        )
        assert response.status_code == 200
        assert response.json()["data"]["summary"] == "Renamed"
        assert response.json()["data"]["start"] == EVENT["start"]

    async def test_update_unknown_field(self, client, authorized, csrf_headers):
        response = await client.patch(
            "/api/calendars/primary/events/evt1",
            json={"colorId": "5"},
            headers=await csrf_headers(),
        )
        assert response.status_code == 400

    async def test_delete_event(self, client, google, authorized, csrf_headers):
        google.route("DELETE", "/calendars/primary/events/evt1", httpx.Response(204))
        response = await client.delete(
            "/api/calendars/primary/events/evt1", headers=await csrf_headers()
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": True, "event_id": "evt1"}
