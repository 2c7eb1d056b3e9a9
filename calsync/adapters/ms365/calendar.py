"""
MS365 calendar adapter.

CalendarService is the entry point for calendar operations. It composes the
timezone and attendee resolvers before building Graph payloads, runs every
mutating call under the retry policy and returns canonical models from
calsync.models, never raw Graph payloads.

Methods:
- create_event(draft): Create an event (retried on 429/5xx)
- update_event(event_id, changes): Partial update guarded by If-Match
- respond_to_event / accept_event / tentatively_accept_event / decline_event
- cancel_event(event_id): Notify attendees or delete silently
- list_events, get_event, get_calendars: Read operations
- add_event_attachment / remove_event_attachment
- get_availability, find_meeting_times, get_rooms: Delegates
"""

import base64
import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote

from pydantic import ValidationError as ModelValidationError

from ...models import (
    Attachment,
    AvailabilityResult,
    Calendar,
    CalendarEvent,
    Confirmation,
    EventBody,
    EventDraft,
    EventTime,
    MeetingTimeResult,
    RoomListing,
)
from ...services.cache import CalendarCaches
from ._auth import GraphClient, endpoint_path
from ._retry import RetryPolicy
from .attendees import AttendeeResolver
from .availability import AvailabilityBatcher, parse_iso_datetime
from .errors import CalendarError, ErrorKind, ValidationError, redact_id, redact_text, report_error
from .meetings import MeetingTimeFinder
from .normalizers import normalize_attachment, normalize_calendar, normalize_event
from .people import GraphPeopleLookup, PeopleLookup
from .rooms import RoomDirectory
from .timezones import DEFAULT_TIMEZONE, TimezoneResolver, concrete_zone, prefer_header


logger = logging.getLogger(__name__)

MAX_ATTACHMENT_SIZE = 3 * 1024 * 1024  # Graph limit for inline upload

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Caller spelling -> Graph action segment
RESPONSE_ACTIONS = {
    "accept": "accept",
    "tentativelyAccept": "tentativelyAccept",
    "tentatively_accept": "tentativelyAccept",
    "decline": "decline",
}


def _body_payload(body: Union[str, EventBody, None]) -> Dict[str, str]:
    if isinstance(body, EventBody):
        return {"contentType": body.content_type, "content": body.content}
    return {"contentType": "HTML", "content": body or ""}


def _location_payload(location: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(location, dict):
        return location
    return {"displayName": location}


def _time_payload(value: EventTime, zone: str) -> Dict[str, str]:
    return {"dateTime": value.date_time, "timeZone": zone}


def _field_payload(
    draft: EventDraft,
    zone: str,
    attendees: Optional[List[Dict[str, Any]]],
    fields: Sequence[str]
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for name in fields:
        value = getattr(draft, name)
        if value is None:
            continue
        if name == "subject":
            payload["subject"] = value
        elif name == "body":
            payload["body"] = _body_payload(value)
        elif name in ("start", "end"):
            payload[name] = _time_payload(value, zone)
        elif name == "location":
            payload["location"] = _location_payload(value)
        elif name == "attendees":
            payload["attendees"] = attendees or []
        elif name == "is_online_meeting":
            payload["isOnlineMeeting"] = value
        elif name == "allow_new_time_proposals":
            payload["allowNewTimeProposals"] = value
    return payload


def build_event_payload(
    draft: EventDraft,
    zone: str,
    attendees: List[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Graph payload for a new event.

    Args:
        draft: Validated caller input
        zone: Concrete zone stamped on start and end
        attendees: Already-resolved Graph attendee objects
    """
    payload = _field_payload(draft, zone, attendees, list(EventDraft.model_fields))
    payload.setdefault("body", _body_payload(None))
    payload["attendees"] = attendees
    payload.setdefault("isOnlineMeeting", False)
    return payload


def build_patch(
    changes: EventDraft,
    zone: str,
    attendees: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    """Graph patch holding only the fields the caller explicitly set."""
    fields = [name for name in EventDraft.model_fields if name in changes.model_fields_set]
    return _field_payload(changes, zone, attendees, fields)


def validate_draft(draft: EventDraft) -> None:
    """
    Raises:
        ValidationError: If subject, start or end is missing or malformed
    """
    if not draft.subject or not draft.subject.strip():
        raise ValidationError("Event subject is required", param="subject")
    if draft.start is None or not draft.start.date_time:
        raise ValidationError("Event start time is required", param="start")
    if draft.end is None or not draft.end.date_time:
        raise ValidationError("Event end time is required", param="end")
    start = parse_iso_datetime(draft.start.date_time, "start")
    end = parse_iso_datetime(draft.end.date_time, "end")
    if start >= end:
        raise ValidationError("Event start must be before end", param="start/end")


def _as_draft(value: Union[EventDraft, Dict[str, Any]]) -> EventDraft:
    if isinstance(value, EventDraft):
        return value
    if isinstance(value, dict):
        try:
            return EventDraft(**value)
        except ModelValidationError as e:
            first = e.errors()[0]
            param = ".".join(str(part) for part in first["loc"]) or "event"
            raise ValidationError(f"Invalid event data: {first['msg']}", param=param)
    raise ValidationError("Event data must be an object", param="event")


def _require_id(value: Optional[str], param: str) -> str:
    if not value or not isinstance(value, str):
        raise ValidationError(f"{param} is required", param=param)
    return value


def _acknowledged(response: Dict[str, Any]) -> bool:
    # Graph answers these actions with 202/204 and no body, or echoes the entity
    return not response or bool(response.get("id"))


def _fail(error: CalendarError, operation: str, message: str, **context) -> CalendarError:
    wrapped = error.with_context(f"{message}: {error.message}", **context)
    report_error(wrapped, operation)
    return wrapped


class CalendarService:
    """
    Calendar operations for one authenticated Graph session.

    Args:
        client: Authenticated GraphClient
        caches: Shared CalendarCaches of this app instance
        people: Lookup for bare attendee names (defaults to Graph people search)
        retry: Retry policy for mutating calls
        default_zone: Zone used when mailbox settings are unavailable

    Example:
        async with get_graph_client(credential_id) as client:
            service = CalendarService(client, caches)
            event = await service.create_event({
                "subject": "Sync",
                "start": {"date_time": "2025-05-01T10:00:00", "time_zone": "Oslo"},
                "end": {"date_time": "2025-05-01T10:30:00", "time_zone": "Oslo"},
                "attendees": ["ada@contoso.com", "Grace Hopper"]
            })
    """

    def __init__(
        self,
        client: GraphClient,
        caches: CalendarCaches,
        people: Optional[PeopleLookup] = None,
        retry: Optional[RetryPolicy] = None,
        default_zone: str = DEFAULT_TIMEZONE
    ):
        self.client = client
        self.retry = retry or RetryPolicy()
        self.timezones = TimezoneResolver(client, caches.timezones, default_zone)
        self.attendees = AttendeeResolver(people if people is not None else GraphPeopleLookup(client))
        self.availability = AvailabilityBatcher(client, self.timezones)
        self.meetings = MeetingTimeFinder(client, self.timezones)
        self.rooms = RoomDirectory(client, caches.rooms)

    def _event_path(self, event_id: str, user_id: str, suffix: str = "") -> str:
        return endpoint_path(user_id, f"/events/{quote(event_id, safe='')}{suffix}")

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    async def create_event(
        self,
        draft: Union[EventDraft, Dict[str, Any]],
        user_id: str = "me"
    ) -> CalendarEvent:
        """
        Create a calendar event.

        Args:
            draft: EventDraft or equivalent dict (subject, start, end required)
            user_id: "me" or a user id / UPN

        Returns:
            The created event, normalized

        Raises:
            ValidationError: Missing or malformed required fields
            CalendarError: Graph rejected the request or retries ran out
                (attempts is set)
        """
        draft = _as_draft(draft)
        validate_draft(draft)

        zone = await self.timezones.resolve_event_zone(draft.start.time_zone, user_id)
        attendees = await self.attendees.resolve(draft.attendees)
        payload = build_event_payload(draft, zone, attendees)
        path = endpoint_path(user_id, "/events")
        headers = prefer_header(zone)

        logger.info("Creating event with %d attendees in zone %s", len(attendees), zone)
        try:
            response = await self.retry.run(
                lambda: self.client.post(path, json=payload, headers=headers),
                "create_event"
            )
        except CalendarError as e:
            raise _fail(e, "create_event", "Failed to create event", endpoint=redact_text(path))

        return normalize_event(response)

    async def _fetch_event(
        self,
        path: str,
        event_id: str,
        operation: str,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        try:
            return await self.retry.run(lambda: self.client.get(path, headers=headers), operation)
        except CalendarError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                raise _fail(e, operation, "Event not found", event_id=redact_id(event_id))
            raise _fail(e, operation, "Failed to fetch event", event_id=redact_id(event_id))

    async def update_event(
        self,
        event_id: str,
        changes: Union[EventDraft, Dict[str, Any]],
        user_id: str = "me"
    ) -> CalendarEvent:
        """
        Update an event with a partial patch.

        The current event is fetched first for its ETag, which is sent as
        If-Match. A 412 triggers one refetch for a fresh ETag and one more
        attempt; that extra attempt is outside the transient retry budget.

        Raises:
            ValidationError: Missing id or malformed fields
            CalendarError: NotFound if the event does not exist,
                ConcurrencyConflict if the second attempt also hits 412
        """
        _require_id(event_id, "event_id")
        changes = _as_draft(changes)
        for name in ("start", "end"):
            value = getattr(changes, name)
            if value is not None:
                parse_iso_datetime(value.date_time, name)

        path = self._event_path(event_id, user_id)
        current = await self._fetch_event(path, event_id, "update_event")
        etag = {"value": current.get("@odata.etag")}

        # A zone given with the moved times wins over the mailbox setting
        requested_zone = next(
            (t.time_zone for t in (changes.start, changes.end) if t is not None and t.time_zone),
            None
        )
        zone = concrete_zone(requested_zone) or await self.timezones.resolve_event_zone(requested_zone, user_id)
        attendees = None
        if "attendees" in changes.model_fields_set:
            attendees = await self.attendees.resolve(changes.attendees)
        patch = build_patch(changes, zone, attendees)
        if not patch:
            logger.info("No changes to apply to event %s", redact_id(event_id))
            return normalize_event(current)

        async def send() -> Dict[str, Any]:
            headers = prefer_header(zone)
            if etag["value"]:
                headers["If-Match"] = etag["value"]
            return await self.client.patch(path, json=patch, headers=headers)

        refetched = False

        async def refetch_on_conflict(error: CalendarError) -> bool:
            nonlocal refetched
            if error.kind != ErrorKind.CONCURRENCY_CONFLICT or refetched:
                return False
            refetched = True
            logger.warning("ETag conflict on event %s, refetching", redact_id(event_id))
            fresh = await self.client.get(path)
            etag["value"] = fresh.get("@odata.etag")
            return True

        try:
            response = await self.retry.run(send, "update_event", recover=refetch_on_conflict)
        except CalendarError as e:
            raise _fail(
                e, "update_event", "Failed to update event",
                event_id=redact_id(event_id), fields=sorted(patch)
            )

        if not response.get("id"):
            response = await self._fetch_event(path, event_id, "update_event", headers=prefer_header(zone))
        return normalize_event(response)

    # ------------------------------------------------------------------
    # Respond / cancel
    # ------------------------------------------------------------------

    async def respond_to_event(
        self,
        event_id: str,
        response: str,
        comment: str = "",
        send_response: bool = True,
        user_id: str = "me"
    ) -> Confirmation:
        """
        Accept, tentatively accept or decline an invitation.

        Args:
            response: "accept", "tentativelyAccept" or "decline"
        """
        _require_id(event_id, "event_id")
        action = RESPONSE_ACTIONS.get(response)
        if action is None:
            raise ValidationError(
                "Invalid response type. Must be one of: accept, tentativelyAccept, decline",
                param="response"
            )

        path = self._event_path(event_id, user_id, f"/{action}")
        body = {"comment": comment or "", "sendResponse": send_response}
        try:
            result = await self.retry.run(lambda: self.client.post(path, json=body), "respond_to_event")
        except CalendarError as e:
            raise _fail(e, "respond_to_event", f"Failed to {action} event", event_id=redact_id(event_id))

        if not _acknowledged(result):
            error = CalendarError(
                f"Failed to {action} event: unexpected response from Graph",
                kind=ErrorKind.OTHER,
                context={"event_id": redact_id(event_id)},
                attempts=1
            )
            report_error(error, "respond_to_event")
            raise error

        logger.info("Responded %s to event %s", action, redact_id(event_id))
        return Confirmation(event_id=event_id, action=action, notified=send_response)

    async def accept_event(self, event_id: str, comment: str = "", **kwargs) -> Confirmation:
        return await self.respond_to_event(event_id, "accept", comment, **kwargs)

    async def tentatively_accept_event(self, event_id: str, comment: str = "", **kwargs) -> Confirmation:
        return await self.respond_to_event(event_id, "tentativelyAccept", comment, **kwargs)

    async def decline_event(self, event_id: str, comment: str = "", **kwargs) -> Confirmation:
        return await self.respond_to_event(event_id, "decline", comment, **kwargs)

    async def cancel_event(
        self,
        event_id: str,
        comment: str = "",
        send_cancellation: bool = True,
        user_id: str = "me"
    ) -> Confirmation:
        """
        Cancel an event.

        With send_cancellation the organizer's attendees get a cancellation
        notice (POST /cancel); without it the event is deleted silently.
        """
        _require_id(event_id, "event_id")
        suffix = "/cancel" if send_cancellation else ""
        path = self._event_path(event_id, user_id, suffix)

        async def send() -> Dict[str, Any]:
            if send_cancellation:
                return await self.client.post(path, json={"comment": comment or ""})
            return await self.client.delete(path)

        try:
            result = await self.retry.run(send, "cancel_event")
        except CalendarError as e:
            raise _fail(e, "cancel_event", "Failed to cancel event", event_id=redact_id(event_id))

        if not _acknowledged(result):
            error = CalendarError(
                "Event cancellation failed: unexpected response from Graph",
                kind=ErrorKind.OTHER,
                context={"event_id": redact_id(event_id)},
                attempts=1
            )
            report_error(error, "cancel_event")
            raise error

        logger.info(
            "Cancelled event %s %s notifications",
            redact_id(event_id), "with" if send_cancellation else "without"
        )
        return Confirmation(
            event_id=event_id,
            action="cancel" if send_cancellation else "delete",
            notified=send_cancellation
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_events(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        top: int = 50,
        order_by: str = "start/dateTime",
        time_zone: Optional[str] = None,
        user_id: str = "me"
    ) -> List[CalendarEvent]:
        """
        List events, optionally between two dates (YYYY-MM-DD, inclusive).

        Raises:
            ValidationError: Malformed dates or top
            CalendarError: Graph request failed
        """
        for param, value in (("start", start), ("end", end)):
            if value is not None and not DATE_RE.match(value):
                raise ValidationError(f"{param} must be a date (YYYY-MM-DD)", param=param)
        if top is not None and top <= 0:
            raise ValidationError("top must be positive", param="top")

        params: Dict[str, Any] = {"$top": top, "$orderby": order_by}
        filters = []
        if start:
            filters.append(f"start/dateTime ge '{start}T00:00:00'")
        if end:
            filters.append(f"end/dateTime le '{end}T23:59:59'")
        if filters:
            params["$filter"] = " and ".join(filters)

        zone = await self.timezones.resolve_query_zone(time_zone, user_id)
        path = endpoint_path(user_id, "/events")
        try:
            response = await self.client.get(path, params=params, headers=prefer_header(zone))
        except CalendarError as e:
            raise _fail(e, "list_events", "Failed to list events", endpoint=redact_text(path))

        events = [normalize_event(e) for e in response.get("value") or [] if isinstance(e, dict)]
        logger.info("Fetched %d events", len(events))
        return events

    async def get_event(
        self,
        event_id: str,
        time_zone: Optional[str] = None,
        user_id: str = "me"
    ) -> CalendarEvent:
        _require_id(event_id, "event_id")
        zone = await self.timezones.resolve_query_zone(time_zone, user_id)
        path = self._event_path(event_id, user_id)
        try:
            response = await self.client.get(path, headers=prefer_header(zone))
        except CalendarError as e:
            message = "Event not found" if e.kind == ErrorKind.NOT_FOUND else "Failed to fetch event"
            raise _fail(e, "get_event", message, event_id=redact_id(event_id))
        return normalize_event(response)

    async def get_calendars(self, include_shared: bool = True, user_id: str = "me") -> List[Calendar]:
        """
        The user's calendars; for "me", shared and delegated calendars from
        all calendar groups are appended (best effort).
        """
        path = endpoint_path(user_id, "/calendars")
        try:
            response = await self.client.get(path)
        except CalendarError as e:
            raise _fail(e, "get_calendars", "Failed to fetch calendars", endpoint=redact_text(path))
        calendars = [c for c in response.get("value") or [] if isinstance(c, dict)]

        if include_shared and (not user_id or user_id == "me"):
            try:
                grouped = await self.client.get("/me/calendarGroups/calendars")
            except CalendarError as e:
                logger.warning("Could not fetch shared calendars (%s)", e.kind.value)
            else:
                known = {c.get("id") for c in calendars}
                calendars.extend(
                    c for c in grouped.get("value") or []
                    if isinstance(c, dict) and c.get("id") not in known
                )

        return [normalize_calendar(c) for c in calendars]

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def add_event_attachment(
        self,
        event_id: str,
        name: str,
        content_type: str,
        content: Union[bytes, str],
        is_inline: bool = False,
        user_id: str = "me"
    ) -> Attachment:
        """
        Attach a file to an event.

        Args:
            content: Raw bytes, or a base64-encoded string

        Raises:
            ValidationError: Missing fields or content above 3MB
        """
        _require_id(event_id, "event_id")
        if not name:
            raise ValidationError("Attachment name is required", param="name")
        if not content_type:
            raise ValidationError("Attachment content type is required", param="content_type")
        if not content:
            raise ValidationError("Attachment content is required", param="content")

        if isinstance(content, (bytes, bytearray)):
            size = len(content)
            encoded = base64.b64encode(bytes(content)).decode("ascii")
        elif isinstance(content, str):
            size = math.ceil(len(content) * 0.75)
            encoded = content
        else:
            raise ValidationError("Attachment content must be bytes or a base64 string", param="content")

        if size > MAX_ATTACHMENT_SIZE:
            raise ValidationError(
                f"Attachment size exceeds the maximum allowed size of {MAX_ATTACHMENT_SIZE // (1024 * 1024)}MB",
                param="content",
                size=size
            )

        body = {
            "@odata.type": "#microsoft.graph.fileAttachment",
            "name": name,
            "contentType": content_type,
            "contentBytes": encoded,
            "isInline": is_inline,
            "size": size
        }
        path = self._event_path(event_id, user_id, "/attachments")
        try:
            response = await self.retry.run(
                lambda: self.client.post(path, json=body), "add_event_attachment"
            )
        except CalendarError as e:
            raise _fail(e, "add_event_attachment", "Failed to add attachment", event_id=redact_id(event_id))
        return normalize_attachment(response)

    async def remove_event_attachment(
        self,
        event_id: str,
        attachment_id: str,
        user_id: str = "me"
    ) -> Confirmation:
        _require_id(event_id, "event_id")
        _require_id(attachment_id, "attachment_id")
        path = self._event_path(event_id, user_id, f"/attachments/{quote(attachment_id, safe='')}")

        attachment_name = None
        try:
            details = await self.client.get(path)
            attachment_name = details.get("name")
        except CalendarError as e:
            logger.debug("Could not read attachment details before removal (%s)", e.kind.value)

        try:
            await self.retry.run(lambda: self.client.delete(path), "remove_event_attachment")
        except CalendarError as e:
            raise _fail(
                e, "remove_event_attachment", "Failed to remove attachment",
                event_id=redact_id(event_id), attachment_id=redact_id(attachment_id)
            )
        return Confirmation(
            event_id=event_id,
            action="remove_attachment",
            detail=attachment_name or "Unknown"
        )

    # ------------------------------------------------------------------
    # Delegates
    # ------------------------------------------------------------------

    async def get_availability(
        self,
        emails: Sequence[str],
        start: str,
        end: str,
        time_zone: Optional[str] = None,
        interval_minutes: Optional[int] = 30,
        user_id: str = "me"
    ) -> List[AvailabilityResult]:
        return await self.availability.get_availability(
            emails, start, end, time_zone=time_zone,
            interval_minutes=interval_minutes, user_id=user_id
        )

    async def find_meeting_times(self, **options) -> MeetingTimeResult:
        return await self.meetings.find_meeting_times(**options)

    async def get_rooms(self, **filters) -> RoomListing:
        return await self.rooms.get_rooms(**filters)

    async def resolve_user_time_zone(self, user_id: str = "me") -> str:
        return await self.timezones.resolve_user_time_zone(user_id)
