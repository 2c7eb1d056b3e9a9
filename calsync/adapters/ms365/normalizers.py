"""
Normalization of Microsoft Graph calendar payloads.

All functions take raw Graph dictionaries and return the canonical models in
calsync.models, regardless of which Graph endpoint produced the payload.
"""

import re
import uuid
import zlib
from typing import Any, Dict, List, Optional, Union

from ...models import (
    Attachment,
    Attendee,
    AttendeeType,
    AvailabilityResult,
    Calendar,
    CalendarEvent,
    EventBody,
    EventTime,
    MeetingSuggestion,
    Organizer,
    Resolution,
    Room,
    RoomEquipment,
    ScheduleItem,
    WorkingHours,
)
from .errors import CalendarError, ErrorKind


BUSY_CODES = ("2", "3")

BUILDING_PATTERNS = [
    re.compile(r"building\s+(\w+)", re.IGNORECASE),
    re.compile(r"bldg\.?\s+(\w+)", re.IGNORECASE),
    re.compile(r"(\w+)\s+building", re.IGNORECASE),
    re.compile(r"^(\w+)\s+-"),  # "HQ - Room 101"
]

FLOOR_PATTERNS = [
    re.compile(r"floor\s+(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)(?:st|nd|rd|th)\s+floor", re.IGNORECASE),
    re.compile(r"\bfl\.?\s+(\d+)", re.IGNORECASE),
    re.compile(r"level\s+(\d+)", re.IGNORECASE),
    re.compile(r"\bf(\d+)\b", re.IGNORECASE),  # "F3-Conference Room"
]


def _email_address(data: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    email = (data or {}).get("emailAddress") or {}
    return {"address": email.get("address"), "name": email.get("name")}


def _event_time(data: Optional[Dict[str, Any]]) -> Optional[EventTime]:
    if not data or not data.get("dateTime"):
        return None
    return EventTime(date_time=data["dateTime"], time_zone=data.get("timeZone"))


def normalize_attendee(raw: Dict[str, Any]) -> Attendee:
    email = _email_address(raw)
    try:
        attendee_type = AttendeeType(raw.get("type") or "required")
    except ValueError:
        attendee_type = AttendeeType.REQUIRED
    status = raw.get("status") or {}
    return Attendee(
        email=email["address"],
        name=email["name"],
        type=attendee_type,
        resolution=Resolution.DIRECT,
        response=status.get("response")
    )


def normalize_event(event: Dict[str, Any]) -> CalendarEvent:
    """
    Normalize a Graph event into a CalendarEvent.

    Raises:
        CalendarError: If the payload is not an event object
    """
    if not isinstance(event, dict):
        raise CalendarError("Invalid event object for normalization", kind=ErrorKind.OTHER)

    body = event.get("body")
    location = event.get("location")
    organizer = event.get("organizer")
    response_status = event.get("responseStatus") or {}
    preview = event.get("bodyPreview") or ""

    return CalendarEvent(
        id=event.get("id"),
        subject=event.get("subject") or "",
        body=EventBody(
            content_type=body.get("contentType") or "HTML",
            content=body.get("content") or ""
        ) if isinstance(body, dict) else None,
        start=_event_time(event.get("start")),
        end=_event_time(event.get("end")),
        location=location.get("displayName") or None if isinstance(location, dict) else None,
        attendees=[
            normalize_attendee(a) for a in event.get("attendees") or []
            if isinstance(a, dict) and a.get("emailAddress")
        ],
        is_online_meeting=bool(event.get("isOnlineMeeting")),
        etag=event.get("@odata.etag"),
        response_status=response_status.get("response"),
        organizer=Organizer(
            name=_email_address(organizer)["name"],
            email=_email_address(organizer)["address"]
        ) if organizer else None,
        is_all_day=bool(event.get("isAllDay")),
        is_cancelled=bool(event.get("isCancelled")),
        web_link=event.get("webLink") if isinstance(event.get("webLink"), str) else None,
        preview=preview[:150],
        created=event.get("createdDateTime"),
        last_modified=event.get("lastModifiedDateTime")
    )


def normalize_availability(result: Dict[str, Any]) -> AvailabilityResult:
    view = result.get("availabilityView") or ""
    hours = result.get("workingHours")
    working_hours = None
    if hours:
        zone = hours.get("timeZone") or {}
        working_hours = WorkingHours(
            days_of_week=hours.get("daysOfWeek") or [],
            start_time=hours.get("startTime") or "08:00:00",
            end_time=hours.get("endTime") or "17:00:00",
            time_zone=(zone.get("name") if isinstance(zone, dict) else zone) or "UTC"
        )

    items = []
    for item in result.get("scheduleItems") or []:
        items.append(ScheduleItem(
            subject=item.get("subject") or "Busy",
            status=item.get("status") or "busy",
            start=(item.get("start") or {}).get("dateTime"),
            end=(item.get("end") or {}).get("dateTime"),
            is_private=bool(item.get("isPrivate"))
        ))

    return AvailabilityResult(
        email=result.get("scheduleId"),
        availability=view,
        working_hours=working_hours,
        schedule_items=items,
        is_busy=any(code in view for code in BUSY_CODES)
    )


def normalize_availability_results(results: Optional[List[Dict[str, Any]]]) -> List[AvailabilityResult]:
    if not results or not isinstance(results, list):
        return []
    return [normalize_availability(r) for r in results if isinstance(r, dict)]


def generate_room_id(room: Dict[str, Any]) -> str:
    """Stable id for rooms Graph returns without one."""
    email = room_email(room)
    if email:
        return "room-" + re.sub(r"[@.]", "-", email)
    name = room.get("displayName") or room.get("name")
    if name:
        return f"room-{zlib.crc32(name.encode('utf-8'))}"
    return f"room-{uuid.uuid4().hex[:12]}"


def room_email(room: Dict[str, Any]) -> Optional[str]:
    # findRooms returns the mailbox as "address"; places returns "emailAddress"
    if room.get("emailAddress"):
        return room["emailAddress"]
    address = room.get("address")
    if isinstance(address, str) and "@" in address:
        return address
    return None


def room_postal_address(room: Dict[str, Any]) -> Optional[str]:
    address = room.get("address")
    if isinstance(address, dict):
        parts = [address.get(k) for k in ("street", "city", "state", "postalCode", "countryOrRegion")]
        joined = ", ".join(p for p in parts if p)
        return joined or None
    if isinstance(address, str) and "@" not in address:
        return address
    return None


def extract_building(room: Dict[str, Any]) -> Optional[str]:
    if room.get("building"):
        return room["building"]
    name = room.get("displayName") or room.get("name") or ""
    for pattern in BUILDING_PATTERNS:
        match = pattern.search(name)
        if match:
            return match.group(1)
    return None


def extract_floor(room: Dict[str, Any]) -> Optional[Union[int, str]]:
    if room.get("floorNumber") is not None:
        return room["floorNumber"]
    if room.get("floor"):
        return room["floor"]
    name = room.get("displayName") or room.get("name") or ""
    for pattern in FLOOR_PATTERNS:
        match = pattern.search(name)
        if match:
            value = match.group(1)
            return int(value) if value.isdigit() else value
    return None


def normalize_room(room: Dict[str, Any]) -> Room:
    capacity = room.get("capacity")
    return Room(
        id=room.get("id") or generate_room_id(room),
        display_name=room.get("displayName") or room.get("name") or "Unnamed Room",
        email_address=room_email(room),
        building=extract_building(room),
        floor=extract_floor(room),
        capacity=int(capacity) if isinstance(capacity, (int, float)) else None,
        address=room_postal_address(room),
        equipment=RoomEquipment(
            has_audio=bool(room.get("audioDeviceName")),
            has_video=bool(room.get("videoDeviceName")),
            has_display=bool(room.get("displayDeviceName"))
        )
    )


def normalize_rooms(rooms: Optional[List[Dict[str, Any]]]) -> List[Room]:
    if not rooms or not isinstance(rooms, list):
        return []
    return [normalize_room(r) for r in rooms if isinstance(r, dict)]


def normalize_meeting_suggestion(raw: Dict[str, Any]) -> MeetingSuggestion:
    slot = raw.get("meetingTimeSlot") or {}
    return MeetingSuggestion(
        start=_event_time(slot.get("start")),
        end=_event_time(slot.get("end")),
        confidence=raw.get("confidence"),
        organizer_availability=raw.get("organizerAvailability"),
        suggestion_reason=raw.get("suggestionReason"),
        attendee_availability=[
            {
                "email": _email_address(a.get("attendee"))["address"],
                "availability": a.get("availability")
            }
            for a in raw.get("attendeeAvailability") or []
        ],
        locations=[
            loc.get("displayName") for loc in raw.get("locations") or []
            if loc.get("displayName")
        ]
    )


def normalize_calendar(calendar: Dict[str, Any]) -> Calendar:
    owner = calendar.get("owner")
    is_default = calendar.get("isDefaultCalendar") is True
    return Calendar(
        id=calendar.get("id") or "",
        name=calendar.get("name"),
        color=calendar.get("color") or "auto",
        owner=Organizer(name=owner.get("name") or "", email=owner.get("address") or "") if owner else None,
        can_edit=calendar.get("canEdit") is True,
        can_share=calendar.get("canShare") is True,
        can_view_private_items=calendar.get("canViewPrivateItems") is True,
        is_default_calendar=is_default,
        is_delegated=bool(owner and owner.get("address") and not is_default)
    )


def normalize_attachment(attachment: Dict[str, Any]) -> Attachment:
    return Attachment(
        id=attachment.get("id"),
        name=attachment.get("name"),
        content_type=attachment.get("contentType"),
        size=attachment.get("size"),
        is_inline=bool(attachment.get("isInline")),
        last_modified=attachment.get("lastModifiedDateTime")
    )
