"""Calendar session: OAuth state machine plus calendar/event operations.

``CalendarSession`` owns the credential for one process (or one web request)
and moves between three states:

    unauthenticated --complete_authorization--> authenticated
    authenticated --(clock passes expires_at - skew)--> expired
    expired --refresh ok--> authenticated
    expired --refresh failed--> unauthenticated

Expiry is detected lazily: ``is_authenticated()`` and every operation check
the clock before doing anything else.  A failed refresh is never retried; the
caller gets ``ReauthenticationRequiredError``.

Calendar/event operations are single Google Calendar v3 REST calls made with
the bearer token; every transport or API failure is raised as
``RemoteServiceError``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from calkeeper.cache import CalendarListCache
from calkeeper.config import CalendarConfig
from calkeeper.credential_store import Credential, CredentialStore
from calkeeper.errors import (
    CorruptedCredentialError,
    MissingCredentialError,
    NoCalendarSelectedError,
    ReauthenticationRequiredError,
    RemoteServiceError,
    ValidationError,
)
from calkeeper.oauth import (
    OAuthTokenClient,
    build_authorization_url,
    redact_credential_values,
    safe_error_message,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


class AuthState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Event models
# ---------------------------------------------------------------------------


class EventTime(BaseModel):
    """Start or end boundary: ``dateTime`` for timed events, ``date`` for all-day."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: str | None = Field(default=None, alias="dateTime")
    date: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")

    @field_validator("date_time", mode="before")
    @classmethod
    def _coerce_datetime(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
            return normalized.isoformat()
        return value

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        return value

    @model_validator(mode="after")
    def _require_one_boundary(self) -> EventTime:
        if not self.date_time and not self.date:
            raise ValueError("event time needs either dateTime or date")
        return self

    def to_google(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EventDraft(BaseModel):
    """Outbound event for ``create_event``; summary, start and end are required."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    summary: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    start: EventTime
    end: EventTime
    status: str | None = None

    @field_validator("summary")
    @classmethod
    def _normalize_summary(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("summary must be a non-empty string")
        return normalized

    def to_google(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.summary,
            "start": self.start.to_google(),
            "end": self.end.to_google(),
        }
        for key in ("description", "location", "status"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        return body


class EventPatch(BaseModel):
    """Partial update: only fields explicitly set are applied."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: EventTime | None = None
    end: EventTime | None = None
    status: str | None = None


# Whitelist of patchable fields and how each is written into the Google body.
_PATCH_APPLIERS: dict[str, Callable[[dict[str, Any], Any], None]] = {
    "summary": lambda body, value: body.__setitem__("summary", value),
    "description": lambda body, value: body.__setitem__("description", value),
    "location": lambda body, value: body.__setitem__("location", value),
    "status": lambda body, value: body.__setitem__("status", value),
    "start": lambda body, value: body.__setitem__("start", value.to_google()),
    "end": lambda body, value: body.__setitem__("end", value.to_google()),
}


class EventRecord(BaseModel):
    """Inbound event normalized from a Google Calendar response."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: dict[str, str] = Field(default_factory=dict)
    end: dict[str, str] = Field(default_factory=dict)
    status: str | None = None
    html_link: str | None = Field(default=None, alias="htmlLink")
    created: str | None = None
    updated: str | None = None

    @classmethod
    def from_google(cls, payload: Mapping[str, Any]) -> EventRecord:
        return cls(
            id=str(payload.get("id", "")),
            summary=payload.get("summary"),
            description=payload.get("description"),
            location=payload.get("location"),
            start=_normalize_boundary(payload.get("start")),
            end=_normalize_boundary(payload.get("end")),
            status=payload.get("status"),
            htmlLink=payload.get("htmlLink"),
            created=payload.get("created"),
            updated=payload.get("updated"),
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CalendarInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    summary: str | None = None
    description: str | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")
    primary: bool = False


def _normalize_boundary(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {
        key: str(value[key])
        for key in ("dateTime", "date", "timeZone")
        if value.get(key) not in (None, "")
    }


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ())) or "event"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# CalendarSession
# ---------------------------------------------------------------------------


class CalendarSession:
    """OAuth-backed session for the Google Calendar API."""

    def __init__(
        self,
        config: CalendarConfig,
        *,
        credential_store: CredentialStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        calendar_cache: CalendarListCache | None = None,
        clock: Callable[[], datetime] | None = None,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        config.validate()
        self._config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._skew = config.calendar.expiry_skew_seconds
        self._api_base_url = api_base_url.rstrip("/")

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.calendar.http_timeout_seconds
        )
        self._oauth = OAuthTokenClient(config.oauth, self._http_client, clock=self._clock)

        self._store = credential_store or CredentialStore(config.storage)
        if calendar_cache is None and config.cache.enabled:
            calendar_cache = CalendarListCache.from_config(config)
        self._calendar_cache = calendar_cache

        self._calendar_id: str | None = config.calendar.default_calendar_id
        self._credential: Credential | None = self._load_initial_credential()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> CalendarSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _load_initial_credential(self) -> Credential | None:
        try:
            credential = self._store.load()
        except MissingCredentialError:
            logger.debug("No stored credential; session starts unauthenticated")
            return None
        except CorruptedCredentialError as exc:
            logger.error("Stored credential is unusable, re-authorization required: %s", exc)
            return None
        logger.debug("Loaded stored credential")
        return credential

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        if self._credential is None:
            return AuthState.UNAUTHENTICATED
        if self._credential.is_expired(now=self._clock(), skew_seconds=self._skew):
            return AuthState.EXPIRED
        return AuthState.AUTHENTICATED

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def credential_store(self) -> CredentialStore:
        return self._store

    @property
    def calendar_id(self) -> str | None:
        return self._calendar_id

    def authorization_url(self, state: str | None = None) -> str:
        """Return the consent URL for the authorization-code flow."""
        logger.debug("Generating authorization URL")
        return build_authorization_url(self._config.oauth, state=state)

    async def complete_authorization(self, code: str) -> Credential:
        """Exchange *code* for a credential, persist it, and become authenticated.

        Raises
        ------
        AuthorizationError
            If the token endpoint rejects the code or cannot be reached.
        """
        logger.debug("Completing authorization")
        credential = await self._oauth.exchange_code(code)
        async with self._store.async_locked():
            self._store.save(credential)
        self._credential = credential
        logger.info("Authentication successful")
        return credential

    async def is_authenticated(self) -> bool:
        """Return True when a usable access token is available.

        An expired token is refreshed here; a failed refresh returns False and
        leaves the session unauthenticated.
        """
        try:
            await self._ensure_authenticated()
        except ReauthenticationRequiredError:
            return False
        return True

    async def _ensure_authenticated(self) -> Credential:
        credential = self._credential
        if credential is None:
            raise ReauthenticationRequiredError(
                "Not authenticated. Run the authorization flow first."
            )
        if not credential.is_expired(now=self._clock(), skew_seconds=self._skew):
            return credential

        logger.debug("Access token expired")
        return await self._refresh(credential)

    async def _refresh(self, credential: Credential) -> Credential:
        async with self._store.async_locked():
            # Someone else may have refreshed while we waited for the lock.
            try:
                on_disk = self._store.load()
            except (MissingCredentialError, CorruptedCredentialError):
                on_disk = None
            if on_disk is not None and not on_disk.is_expired(
                now=self._clock(), skew_seconds=self._skew
            ):
                logger.info("Adopted credential refreshed by another session")
                self._credential = on_disk
                return on_disk

            try:
                refreshed = await self._oauth.refresh(credential)
            except ReauthenticationRequiredError:
                logger.error("Failed to refresh token; re-authorization required")
                self._credential = None
                raise

            self._store.save(refreshed)
            self._credential = refreshed
            logger.info("Token refreshed successfully")
            return refreshed

    async def logout(self, *, revoke: bool = False) -> None:
        """Forget the credential in memory and on disk."""
        credential = self._credential
        self._credential = None
        if revoke and credential is not None:
            await self._oauth.revoke(credential.refresh_token or credential.access_token)
        async with self._store.async_locked():
            self._store.delete()
        if self._calendar_cache is not None:
            self._calendar_cache.clear()

    # ------------------------------------------------------------------
    # Calendar selection
    # ------------------------------------------------------------------

    def set_calendar(self, calendar_id: str) -> None:
        normalized = calendar_id.strip() if isinstance(calendar_id, str) else ""
        if not normalized:
            raise ValidationError("calendar_id must be a non-empty string")
        self._calendar_id = normalized
        logger.info("Calendar set", extra={"calendar_id": normalized})

    def _require_calendar(self) -> str:
        if not self._calendar_id:
            logger.error("No calendar selected")
            raise NoCalendarSelectedError("No calendar selected. Call set_calendar() first.")
        return self._calendar_id

    def _events_path(self, calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            normalized = event_id.strip()
            if not normalized:
                raise ValidationError("event_id must be a non-empty string")
            path = f"{path}/{quote(normalized, safe='')}"
        return path

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(
        self,
        credential: Credential,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._api_base_url}{path}"
        headers = {
            "Authorization": f"{credential.token_type or 'Bearer'} {credential.access_token}",
            "Accept": "application/json",
        }
        try:
            response = await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.HTTPError as exc:
            message = redact_credential_values(str(exc)) or type(exc).__name__
            logger.error("Calendar API %s %s failed: %s", method, path, message)
            raise RemoteServiceError(f"Google Calendar request failed: {message}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = safe_error_message(response)
            logger.error(
                "Calendar API %s %s returned %d: %s", method, path, response.status_code, message
            )
            raise RemoteServiceError(
                f"Google Calendar API request failed ({response.status_code}): {message}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteServiceError(
                "Google Calendar API returned invalid JSON", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteServiceError(
                "Google Calendar API returned an unexpected payload shape",
                status_code=response.status_code,
            )
        return payload

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_calendars(self) -> list[dict[str, Any]]:
        """List calendars visible to the authenticated user."""
        credential = await self._ensure_authenticated()

        if self._calendar_cache is not None:
            cached = self._calendar_cache.get()
            if cached is not None:
                logger.debug("Serving calendar list from cache")
                return cached

        logger.debug("Getting available calendars")
        calendars: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": self._config.calendar.max_results_per_page}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request(
                credential, "GET", "/users/me/calendarList", params=params
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict) or not item.get("id"):
                    continue
                info = CalendarInfo(
                    id=item["id"],
                    summary=item.get("summary"),
                    description=item.get("description"),
                    timeZone=item.get("timeZone"),
                    primary=bool(item.get("primary", False)),
                )
                calendars.append(info.model_dump(by_alias=True))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        if self._calendar_cache is not None:
            self._calendar_cache.put(calendars)
        logger.info("Retrieved calendars", extra={"count": len(calendars)})
        return calendars

    async def create_event(self, draft: EventDraft | Mapping[str, Any]) -> EventRecord:
        """Insert an event into the selected calendar.

        Raises
        ------
        ValidationError
            If summary, start or end is missing or malformed.
        """
        credential = await self._ensure_authenticated()
        calendar_id = self._require_calendar()

        if not isinstance(draft, EventDraft):
            try:
                draft = EventDraft.model_validate(dict(draft))
            except PydanticValidationError as exc:
                logger.error("Rejected event draft: %s", _validation_message(exc))
                raise ValidationError(f"Invalid event: {_validation_message(exc)}") from exc

        logger.debug(
            "Creating event", extra={"calendar_id": calendar_id, "summary": draft.summary}
        )
        payload = await self._request(
            credential, "POST", self._events_path(calendar_id), json_body=draft.to_google()
        )
        record = EventRecord.from_google(payload)
        logger.info("Event created", extra={"event_id": record.id})
        return record

    async def get_event(self, event_id: str) -> EventRecord:
        credential = await self._ensure_authenticated()
        calendar_id = self._require_calendar()
        payload = await self._request(credential, "GET", self._events_path(calendar_id, event_id))
        return EventRecord.from_google(payload)

    async def update_event(
        self,
        event_id: str,
        patch: EventPatch | Mapping[str, Any],
    ) -> EventRecord:
        """Apply only the fields present in *patch* to an existing event.

        Unknown field names are rejected with ``ValidationError``.
        """
        credential = await self._ensure_authenticated()
        calendar_id = self._require_calendar()

        if not isinstance(patch, EventPatch):
            try:
                patch = EventPatch.model_validate(dict(patch))
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid event update: {_validation_message(exc)}") from exc

        for required in ("start", "end"):
            if required in patch.model_fields_set and getattr(patch, required) is None:
                raise ValidationError(f"{required} cannot be removed from an event")

        path = self._events_path(calendar_id, event_id)
        existing = await self._request(credential, "GET", path)

        merged = dict(existing)
        for field_name in sorted(patch.model_fields_set):
            _PATCH_APPLIERS[field_name](merged, getattr(patch, field_name))

        payload = await self._request(credential, "PUT", path, json_body=merged)
        record = EventRecord.from_google(payload)
        logger.info(
            "Event updated",
            extra={"event_id": record.id, "fields": sorted(patch.model_fields_set)},
        )
        return record

    async def delete_event(self, event_id: str) -> None:
        credential = await self._ensure_authenticated()
        calendar_id = self._require_calendar()
        await self._request(credential, "DELETE", self._events_path(calendar_id, event_id))
        logger.info("Event deleted", extra={"event_id": event_id})

    async def list_events(self, start: datetime, end: datetime) -> list[EventRecord]:
        """Return event instances between *start* and *end*, ordered by start time.

        Recurring events are expanded into single instances.  An empty list
        is a normal result.
        """
        credential = await self._ensure_authenticated()
        calendar_id = self._require_calendar()
        if end < start:
            raise ValidationError("end must not be earlier than start")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": _google_rfc3339(start),
            "timeMax": _google_rfc3339(end),
            "maxResults": self._config.calendar.max_results_per_page,
            "timeZone": self._config.calendar.timezone,
        }
        logger.debug(
            "Listing events",
            extra={
                "calendar_id": calendar_id,
                "time_min": params["timeMin"],
                "time_max": params["timeMax"],
            },
        )

        events: list[EventRecord] = []
        while True:
            payload = await self._request(
                credential, "GET", self._events_path(calendar_id), params=params
            )
            for item in payload.get("items") or []:
                if isinstance(item, dict) and item.get("id"):
                    events.append(EventRecord.from_google(item))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}

        logger.info("Events retrieved", extra={"count": len(events)})
        return events


__all__ = [
    "AuthState",
    "CalendarInfo",
    "CalendarSession",
    "EventDraft",
    "EventPatch",
    "EventRecord",
    "EventTime",
]
