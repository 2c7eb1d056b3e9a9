"""
Canonical calendar models.

These are the provider-agnostic shapes returned to callers. Graph payloads
are converted into them by adapters.ms365.normalizers and never leak out raw.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class AttendeeType(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    RESOURCE = "resource"


class Resolution(str, Enum):
    """How an attendee's address was obtained."""
    DIRECT = "direct"          # caller supplied a valid email
    RESOLVED = "resolved"      # looked up from a display name
    UNRESOLVED = "unresolved"  # lookup failed, attendee dropped


class EventTime(BaseModel):
    date_time: str
    time_zone: Optional[str] = None


class EventBody(BaseModel):
    content_type: str = "HTML"
    content: str = ""


class Attendee(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    type: AttendeeType = AttendeeType.REQUIRED
    resolution: Resolution = Resolution.DIRECT
    response: Optional[str] = None


class Organizer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class CalendarEvent(BaseModel):
    id: Optional[str] = None
    subject: str = ""
    body: Optional[EventBody] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    location: Optional[str] = None
    attendees: List[Attendee] = Field(default_factory=list)
    is_online_meeting: bool = False
    etag: Optional[str] = None
    response_status: Optional[str] = None
    organizer: Optional[Organizer] = None
    is_all_day: bool = False
    is_cancelled: bool = False
    web_link: Optional[str] = None
    preview: str = ""
    created: Optional[str] = None
    last_modified: Optional[str] = None

    def to_draft(self) -> "EventDraft":
        """Re-express this event as caller input, e.g. to send it back as an update."""
        fields: Dict[str, Any] = {
            "subject": self.subject,
            "attendees": [
                {"email": a.email, "name": a.name, "type": a.type.value}
                for a in self.attendees if a.email
            ],
            "is_online_meeting": self.is_online_meeting
        }
        for name in ("body", "start", "end", "location"):
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        return EventDraft(**fields)


class EventDraft(BaseModel):
    """
    Caller input for create and update.

    All fields are optional so the same model carries partial updates; on
    update only the fields the caller explicitly set are sent to Graph.
    """
    subject: Optional[str] = None
    body: Optional[Union[str, EventBody]] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    location: Optional[Union[str, Dict[str, Any]]] = None
    attendees: Optional[List[Union[str, Dict[str, Any]]]] = None
    is_online_meeting: Optional[bool] = None
    allow_new_time_proposals: Optional[bool] = None

    model_config = {"validate_assignment": True}


class WorkingHours(BaseModel):
    days_of_week: List[str] = Field(default_factory=list)
    start_time: str = "08:00:00"
    end_time: str = "17:00:00"
    time_zone: str = "UTC"


class ScheduleItem(BaseModel):
    subject: str = "Busy"
    status: str = "busy"
    start: Optional[str] = None
    end: Optional[str] = None
    is_private: bool = False


class AvailabilityResult(BaseModel):
    email: Optional[str] = None
    availability: str = ""
    working_hours: Optional[WorkingHours] = None
    schedule_items: List[ScheduleItem] = Field(default_factory=list)
    is_busy: bool = False


class RoomEquipment(BaseModel):
    has_audio: bool = False
    has_video: bool = False
    has_display: bool = False


class Room(BaseModel):
    id: str
    display_name: str
    email_address: Optional[str] = None
    building: Optional[str] = None
    floor: Optional[Union[int, str]] = None
    capacity: Optional[int] = None
    address: Optional[str] = None
    equipment: RoomEquipment = Field(default_factory=RoomEquipment)


class RoomListing(BaseModel):
    rooms: List[Room] = Field(default_factory=list)
    paging_token: Optional[str] = None
    from_cache: bool = False
    stale: bool = False


class MeetingSuggestion(BaseModel):
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    confidence: Optional[float] = None
    organizer_availability: Optional[str] = None
    suggestion_reason: Optional[str] = None
    attendee_availability: List[Dict[str, Optional[str]]] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)


class MeetingTimeResult(BaseModel):
    suggestions: List[MeetingSuggestion] = Field(default_factory=list)
    empty_reason: Optional[str] = None
    time_constraint: Dict[str, Any] = Field(default_factory=dict)


class Calendar(BaseModel):
    id: str
    name: Optional[str] = None
    color: str = "auto"
    owner: Optional[Organizer] = None
    can_edit: bool = False
    can_share: bool = False
    can_view_private_items: bool = False
    is_default_calendar: bool = False
    is_delegated: bool = False


class Attachment(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    is_inline: bool = False
    last_modified: Optional[str] = None


class Confirmation(BaseModel):
    """Result of respond / cancel / attachment removal."""
    success: bool = True
    event_id: str
    action: str
    notified: Optional[bool] = None
    detail: Optional[str] = None
