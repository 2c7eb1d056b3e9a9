"""
Meeting time suggestions via /me/findMeetingTimes.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ...models import MeetingTimeResult
from ._auth import GraphClient, endpoint_path
from .attendees import is_valid_email
from .availability import parse_iso_datetime
from .errors import CalendarError, ValidationError, redact_text, report_error
from .normalizers import normalize_meeting_suggestion
from .timezones import TimezoneResolver


logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(days=7)
DEFAULT_DURATION_MINUTES = 30
DEFAULT_MAX_CANDIDATES = 10

STATUS_MESSAGES = {
    400: "Invalid request parameters for finding meeting times. Check attendee emails and time constraints.",
    403: "Permission denied. You may not have access to the calendars of all attendees.",
    429: "Rate limit exceeded. Too many requests to the calendar service.",
}


def iso_duration(minutes: int) -> str:
    """30 -> "PT30M", 90 -> "PT1H30M" """
    hours, mins = divmod(int(minutes), 60)
    if hours and mins:
        return f"PT{hours}H{mins}M"
    if hours:
        return f"PT{hours}H"
    return f"PT{mins}M"


def _format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds")


def _attendee_payload(attendee: Any) -> Dict[str, Any]:
    if isinstance(attendee, str):
        email, attendee_type = attendee, "required"
    elif isinstance(attendee, dict):
        nested = attendee.get("emailAddress") if isinstance(attendee.get("emailAddress"), dict) else {}
        email = attendee.get("email") or attendee.get("address") or nested.get("address")
        attendee_type = attendee.get("type") or "required"
    else:
        email, attendee_type = None, "required"
    if not is_valid_email(email):
        raise ValidationError("Meeting attendees must be valid email addresses", param="attendees")
    return {"type": attendee_type, "emailAddress": {"address": email}}


class MeetingTimeFinder:
    """
    Args:
        client: Authenticated GraphClient
        timezones: Resolver used when the caller gives no zone
        now: Clock returning an aware datetime (injectable for tests)
    """

    def __init__(
        self,
        client: GraphClient,
        timezones: TimezoneResolver,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.client = client
        self.timezones = timezones
        self.now = now

    async def find_meeting_times(
        self,
        attendees: Optional[Sequence[Any]] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        time_zone: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        time_slots: Optional[List[Dict[str, str]]] = None,
        location_constraint: Optional[Dict[str, Any]] = None,
        user_id: str = "me"
    ) -> MeetingTimeResult:
        """
        Ask Graph for meeting slots.

        Args:
            attendees: Emails or attendee objects; omitted from the request when empty
            start, end: Search window (defaults to now .. now + 7 days)
            time_zone: Zone for the window (defaults to the user's preferred zone)
            duration_minutes: Meeting length (default 30)
            max_candidates: Upper bound on suggestions
            time_slots: Several windows as [{"start": ..., "end": ...}]; overrides start/end
            location_constraint: Passed to Graph unchanged

        Raises:
            ValidationError: Bad dates, duration or attendees
            CalendarError: Graph rejected the request
        """
        if duration_minutes is None:
            duration_minutes = DEFAULT_DURATION_MINUTES
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError("meeting duration must be a positive number of minutes", param="duration_minutes")
        if max_candidates is not None and max_candidates <= 0:
            raise ValidationError("max_candidates must be positive", param="max_candidates")

        zone = await self.timezones.resolve_query_zone(time_zone, user_id)

        if time_slots:
            windows = []
            for i, slot in enumerate(time_slots):
                slot_start, slot_end = slot.get("start"), slot.get("end")
                if parse_iso_datetime(slot_start, f"time_slots[{i}].start") >= \
                        parse_iso_datetime(slot_end, f"time_slots[{i}].end"):
                    raise ValidationError("time slot start must be before end", param=f"time_slots[{i}]")
                windows.append((slot_start, slot_end))
        else:
            now = self.now()
            window_start = start or _format_time(now)
            window_end = end or _format_time(now + DEFAULT_WINDOW)
            if parse_iso_datetime(window_start, "start") >= parse_iso_datetime(window_end, "end"):
                raise ValidationError("start must be before end", param="start/end")
            windows = [(window_start, window_end)]

        body: Dict[str, Any] = {
            "timeConstraint": {
                "timeslots": [
                    {
                        "start": {"dateTime": s, "timeZone": zone},
                        "end": {"dateTime": e, "timeZone": zone}
                    }
                    for s, e in windows
                ]
            },
            "meetingDuration": iso_duration(duration_minutes),
            "maxCandidates": max_candidates or DEFAULT_MAX_CANDIDATES
        }
        # Some tenants reject an empty attendees array
        if attendees:
            body["attendees"] = [_attendee_payload(a) for a in attendees]
        if location_constraint:
            body["locationConstraint"] = location_constraint

        endpoint = endpoint_path(user_id, "/findMeetingTimes")
        try:
            response = await self.client.post(endpoint, json=body)
        except CalendarError as e:
            message = STATUS_MESSAGES.get(e.status_code, f"Failed to find meeting times: {e.message}")
            error = CalendarError(
                message,
                kind=e.kind,
                context={
                    "endpoint": redact_text(endpoint.split("?")[0]),
                    "attendee_count": len(body.get("attendees", [])),
                    "timeslot_count": len(windows)
                },
                cause=e,
                status_code=e.status_code,
                attempts=1
            )
            report_error(error, "find_meeting_times")
            raise error

        suggestions = [
            normalize_meeting_suggestion(s)
            for s in response.get("meetingTimeSuggestions") or []
            if isinstance(s, dict)
        ]
        logger.info("Found %d meeting time suggestions", len(suggestions))

        return MeetingTimeResult(
            suggestions=suggestions,
            empty_reason=response.get("emptySuggestionsReason") or None,
            time_constraint={
                "start": windows[0][0],
                "end": windows[-1][1],
                "time_zone": zone,
                "meeting_duration": duration_minutes
            }
        )
