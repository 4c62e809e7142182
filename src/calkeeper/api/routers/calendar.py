"""Calendar and event endpoints.

Each request builds its own ``CalendarSession`` with the calendar taken
from the path, so the selection never leaks between requests.  Mutating
routes require the session CSRF token.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from calkeeper.api.deps import RequestContext, get_request_context, require_csrf
from calkeeper.api.models import ApiMeta, ApiResponse, DeleteEventResponse
from calkeeper.calendar import CalendarInfo, EventRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendars", tags=["calendars"])


@router.get("", response_model=ApiResponse[list[CalendarInfo]])
async def list_calendars(
    ctx: RequestContext = Depends(get_request_context),
) -> ApiResponse[list[CalendarInfo]]:
    async with ctx.calendar_session() as session:
        calendars = await session.get_calendars()
    return ApiResponse[list[CalendarInfo]](
        data=[CalendarInfo.model_validate(item) for item in calendars]
    )


@router.get("/{calendar_id}/events", response_model=ApiResponse[list[EventRecord]])
async def list_events(
    calendar_id: str,
    start: datetime = Query(..., description="Lower bound (RFC 3339)."),
    end: datetime = Query(..., description="Upper bound (RFC 3339)."),
    ctx: RequestContext = Depends(get_request_context),
) -> ApiResponse[list[EventRecord]]:
    async with ctx.calendar_session(calendar_id) as session:
        events = await session.list_events(start, end)
    return ApiResponse[list[EventRecord]](data=events, meta=ApiMeta(count=len(events)))


@router.get("/{calendar_id}/events/{event_id}", response_model=ApiResponse[EventRecord])
async def get_event(
    calendar_id: str,
    event_id: str,
    ctx: RequestContext = Depends(get_request_context),
) -> ApiResponse[EventRecord]:
    async with ctx.calendar_session(calendar_id) as session:
        event = await session.get_event(event_id)
    return ApiResponse[EventRecord](data=event)


@router.post(
    "/{calendar_id}/events",
    response_model=ApiResponse[EventRecord],
    status_code=201,
)
async def create_event(
    calendar_id: str,
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(require_csrf),
) -> ApiResponse[EventRecord]:
    async with ctx.calendar_session(calendar_id) as session:
        event = await session.create_event(payload)
    return ApiResponse[EventRecord](data=event)


@router.patch("/{calendar_id}/events/{event_id}", response_model=ApiResponse[EventRecord])
async def update_event(
    calendar_id: str,
    event_id: str,
    payload: dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(require_csrf),
) -> ApiResponse[EventRecord]:
    async with ctx.calendar_session(calendar_id) as session:
        event = await session.update_event(event_id, payload)
    return ApiResponse[EventRecord](data=event)


@router.delete(
    "/{calendar_id}/events/{event_id}",
    response_model=ApiResponse[DeleteEventResponse],
)
async def delete_event(
    calendar_id: str,
    event_id: str,
    ctx: RequestContext = Depends(require_csrf),
) -> ApiResponse[DeleteEventResponse]:
    async with ctx.calendar_session(calendar_id) as session:
        await session.delete_event(event_id)
    return ApiResponse[DeleteEventResponse](data=DeleteEventResponse(event_id=event_id))
