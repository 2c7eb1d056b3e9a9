"""
MS365 Calendar Routes

Thin HTTP surface over CalendarService. Every route is scoped to a
credential; the Graph client for it is created per request and closed
afterwards, while caches are shared through app.state.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..adapters.ms365 import CalendarService, get_graph_client
from ..adapters.ms365.errors import CalendarError, ErrorKind
from ..models import (
    Attachment,
    AvailabilityResult,
    Calendar,
    CalendarEvent,
    Confirmation,
    EventDraft,
    MeetingTimeResult,
    RoomListing,
)
from ..services.cache import CalendarCaches


router = APIRouter(prefix="/calendar/ms365/{credential_id}", tags=["MS365 Calendar"])

ERROR_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVER_ERROR: 502,
    ErrorKind.OTHER: 502,
}


def http_error(error: CalendarError) -> HTTPException:
    """Map a CalendarError to an HTTPException with a stable JSON detail."""
    return HTTPException(status_code=ERROR_STATUS.get(error.kind, 502), detail=error.to_dict())


async def get_calendar_service(credential_id: str, request: Request) -> AsyncIterator[CalendarService]:
    caches = getattr(request.app.state, "caches", None)
    if caches is None:
        caches = request.app.state.caches = CalendarCaches()
    async with get_graph_client(credential_id) as client:
        yield CalendarService(client, caches)


class RespondRequest(BaseModel):
    """Reply to an invitation"""
    response: str = Field(..., examples=["accept", "tentativelyAccept", "decline"])
    comment: str = ""
    send_response: bool = True


class CancelRequest(BaseModel):
    comment: str = ""
    send_cancellation: bool = Field(
        default=True,
        description="Notify attendees (cancel) or delete silently"
    )


class AttachmentRequest(BaseModel):
    name: str
    content_type: str = Field(..., examples=["application/pdf"])
    content_bytes: str = Field(..., description="Base64-encoded file content (max 3MB)")
    is_inline: bool = False


class AvailabilityRequest(BaseModel):
    emails: List[str] = Field(..., min_length=1)
    start: str = Field(..., examples=["2025-05-01T08:00:00"])
    end: str = Field(..., examples=["2025-05-01T17:00:00"])
    time_zone: Optional[str] = None
    interval_minutes: int = 30


class FindMeetingTimesRequest(BaseModel):
    attendees: Optional[List[Union[str, Dict[str, Any]]]] = None
    start: Optional[str] = None
    end: Optional[str] = None
    time_zone: Optional[str] = None
    duration_minutes: Optional[int] = None
    max_candidates: int = 10
    time_slots: Optional[List[Dict[str, str]]] = None
    location_constraint: Optional[Dict[str, Any]] = None


@router.get("/events", response_model=List[CalendarEvent])
async def list_events(
    start: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="YYYY-MM-DD"),
    top: int = 50,
    time_zone: Optional[str] = None,
    service: CalendarService = Depends(get_calendar_service)
):
    """
    List calendar events.

    Examples:
        GET /calendar/ms365/{credential_id}/events
        GET /calendar/ms365/{credential_id}/events?start=2025-05-01&end=2025-05-07
    """
    try:
        return await service.list_events(start=start, end=end, top=top, time_zone=time_zone)
    except CalendarError as e:
        raise http_error(e)


@router.get("/events/{event_id}", response_model=CalendarEvent)
async def get_event(
    event_id: str,
    time_zone: Optional[str] = None,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.get_event(event_id, time_zone=time_zone)
    except CalendarError as e:
        raise http_error(e)


@router.post("/events", response_model=CalendarEvent, status_code=201)
async def create_event(draft: EventDraft, service: CalendarService = Depends(get_calendar_service)):
    """
    Create an event.

    Attendees may be emails, display names (resolved through people search)
    or {"email", "name", "type"} objects.

    Example:
        POST /calendar/ms365/{credential_id}/events
        {
            "subject": "Planning",
            "start": {"date_time": "2025-05-01T10:00:00", "time_zone": "Oslo"},
            "end": {"date_time": "2025-05-01T11:00:00", "time_zone": "Oslo"},
            "attendees": ["ada@contoso.com", "Grace Hopper"]
        }
    """
    try:
        return await service.create_event(draft)
    except CalendarError as e:
        raise http_error(e)


@router.patch("/events/{event_id}", response_model=CalendarEvent)
async def update_event(
    event_id: str,
    changes: EventDraft,
    service: CalendarService = Depends(get_calendar_service)
):
    """Partial update: only fields present in the request body are changed."""
    try:
        return await service.update_event(event_id, changes)
    except CalendarError as e:
        raise http_error(e)


@router.post("/events/{event_id}/respond", response_model=Confirmation)
async def respond_to_event(
    event_id: str,
    request: RespondRequest,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.respond_to_event(
            event_id, request.response, request.comment, send_response=request.send_response
        )
    except CalendarError as e:
        raise http_error(e)


@router.post("/events/{event_id}/cancel", response_model=Confirmation)
async def cancel_event(
    event_id: str,
    request: CancelRequest,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.cancel_event(
            event_id, request.comment, send_cancellation=request.send_cancellation
        )
    except CalendarError as e:
        raise http_error(e)


@router.post("/events/{event_id}/attachments", response_model=Attachment, status_code=201)
async def add_event_attachment(
    event_id: str,
    request: AttachmentRequest,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.add_event_attachment(
            event_id, request.name, request.content_type, request.content_bytes,
            is_inline=request.is_inline
        )
    except CalendarError as e:
        raise http_error(e)


@router.delete("/events/{event_id}/attachments/{attachment_id}", response_model=Confirmation)
async def remove_event_attachment(
    event_id: str,
    attachment_id: str,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.remove_event_attachment(event_id, attachment_id)
    except CalendarError as e:
        raise http_error(e)


@router.get("/calendars", response_model=List[Calendar])
async def get_calendars(
    include_shared: bool = True,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.get_calendars(include_shared=include_shared)
    except CalendarError as e:
        raise http_error(e)


@router.post("/availability", response_model=List[AvailabilityResult])
async def get_availability(
    request: AvailabilityRequest,
    service: CalendarService = Depends(get_calendar_service)
):
    """
    Free/busy for up to any number of users or rooms (batched by 100).

    Example:
        POST /calendar/ms365/{credential_id}/availability
        {"emails": ["ada@contoso.com"], "start": "2025-05-01T08:00:00", "end": "2025-05-01T17:00:00"}
    """
    try:
        return await service.get_availability(
            request.emails, request.start, request.end,
            time_zone=request.time_zone, interval_minutes=request.interval_minutes
        )
    except CalendarError as e:
        raise http_error(e)


@router.post("/meeting-times", response_model=MeetingTimeResult)
async def find_meeting_times(
    request: FindMeetingTimesRequest,
    service: CalendarService = Depends(get_calendar_service)
):
    try:
        return await service.find_meeting_times(**request.model_dump())
    except CalendarError as e:
        raise http_error(e)


@router.get("/rooms", response_model=RoomListing)
async def get_rooms(
    building: Optional[str] = None,
    floor: Optional[str] = None,
    min_capacity: Optional[int] = Query(None, ge=0),
    has_audio: Optional[bool] = None,
    has_video: Optional[bool] = None,
    has_display: Optional[bool] = None,
    refresh: bool = Query(False, description="Bypass the room cache"),
    service: CalendarService = Depends(get_calendar_service)
):
    """
    Examples:
        GET /calendar/ms365/{credential_id}/rooms?floor=3&min_capacity=10
        GET /calendar/ms365/{credential_id}/rooms?building=HQ&has_video=true
    """
    try:
        return await service.get_rooms(
            building=building,
            floor=floor,
            min_capacity=min_capacity,
            has_audio=has_audio,
            has_video=has_video,
            has_display=has_display,
            bypass_cache=refresh
        )
    except CalendarError as e:
        raise http_error(e)


@router.get("/timezone")
async def get_time_zone(service: CalendarService = Depends(get_calendar_service)):
    """The user's preferred zone (default zone when mailbox settings are unreadable)."""
    return {"time_zone": await service.resolve_user_time_zone()}
