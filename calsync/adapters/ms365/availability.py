"""
Free/busy lookups via /me/calendar/getSchedule.

Graph accepts at most 100 schedules per call, so larger requests are split
into batches issued one after another and merged.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ...models import AvailabilityResult
from ._auth import GraphClient
from .attendees import is_valid_email
from .errors import CalendarError, ValidationError, report_error
from .normalizers import normalize_availability_results
from .timezones import TimezoneResolver


logger = logging.getLogger(__name__)

MAX_SCHEDULES_PER_REQUEST = 100
DEFAULT_INTERVAL_MINUTES = 30
SCHEDULE_ENDPOINT = "/me/calendar/getSchedule"

ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,7})?(Z|[+-]\d{2}:\d{2})?$"
)


def parse_iso_datetime(value: Any, param: str) -> datetime:
    """
    Parse a strict ISO 8601 date-time. Naive values are treated as UTC for
    ordering checks only; the original string is what goes to Graph.

    Raises:
        ValidationError: If the value is missing or malformed
    """
    if not value:
        raise ValidationError(f"{param} is required", param=param)
    if not isinstance(value, str) or not ISO_DATETIME_RE.match(value):
        raise ValidationError(
            f"{param} must be an ISO 8601 date-time (YYYY-MM-DDThh:mm:ss)", param=param
        )
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    fraction = re.search(r"\.(\d+)", text)
    if fraction and len(fraction.group(1)) > 6:
        text = text.replace(fraction.group(0), "." + fraction.group(1)[:6])
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{param} is not a valid date-time", param=param)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def chunk(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class AvailabilityBatcher:
    """
    Example:
        batcher = AvailabilityBatcher(client, tz_resolver)
        results = await batcher.get_availability(
            ["a@contoso.com", "room1@contoso.com"],
            "2025-05-01T08:00:00", "2025-05-01T17:00:00"
        )
    """

    def __init__(self, client: GraphClient, timezones: TimezoneResolver):
        self.client = client
        self.timezones = timezones

    @staticmethod
    def validate(
        emails: Any,
        start: Any,
        end: Any,
        interval_minutes: Any
    ) -> None:
        if not isinstance(emails, (list, tuple)):
            raise ValidationError("emails must be a list of email addresses", param="emails")
        if not emails:
            raise ValidationError("At least one email address is required", param="emails")
        for index, email in enumerate(emails):
            if not is_valid_email(email):
                raise ValidationError(
                    f"Invalid email address at index {index}", param=f"emails[{index}]"
                )

        start_dt = parse_iso_datetime(start, "start")
        end_dt = parse_iso_datetime(end, "end")
        if start_dt >= end_dt:
            raise ValidationError("start must be before end", param="start/end")

        if interval_minutes is not None:
            if isinstance(interval_minutes, bool) or not isinstance(interval_minutes, (int, float)):
                raise ValidationError("intervalMinutes must be a number", param="interval_minutes")
            if isinstance(interval_minutes, float) and not interval_minutes.is_integer():
                raise ValidationError("intervalMinutes must be a whole number", param="interval_minutes")
            if interval_minutes <= 0 or interval_minutes > 1440:
                raise ValidationError(
                    "intervalMinutes must be greater than 0 and at most 1440",
                    param="interval_minutes"
                )

    async def get_availability(
        self,
        emails: Sequence[str],
        start: str,
        end: str,
        time_zone: Optional[str] = None,
        interval_minutes: Optional[int] = DEFAULT_INTERVAL_MINUTES,
        user_id: str = "me"
    ) -> List[AvailabilityResult]:
        """
        Free/busy for many users or rooms over one window.

        Raises:
            ValidationError: Bad emails, dates or interval
            CalendarError: A batch failed; context has batch_index and
                affected_count only
        """
        self.validate(emails, start, end, interval_minutes)
        interval = int(interval_minutes) if interval_minutes is not None else DEFAULT_INTERVAL_MINUTES
        zone = await self.timezones.resolve_query_zone(time_zone, user_id)

        batches = chunk(list(emails), MAX_SCHEDULES_PER_REQUEST)
        logger.info(
            "Getting availability for %d schedules in %d batches (zone %s)",
            len(emails), len(batches), zone
        )

        raw_results: List[Dict[str, Any]] = []
        for index, batch in enumerate(batches):
            body = {
                "schedules": batch,
                "startTime": {"dateTime": start, "timeZone": zone},
                "endTime": {"dateTime": end, "timeZone": zone},
                "availabilityViewInterval": interval
            }
            try:
                response = await self.client.post(SCHEDULE_ENDPOINT, json=body)
            except CalendarError as e:
                error = CalendarError(
                    f"Failed to get availability for batch {index + 1} of {len(batches)}",
                    kind=e.kind,
                    context={
                        "endpoint": SCHEDULE_ENDPOINT,
                        "batch_index": index,
                        "batch_count": len(batches),
                        "affected_count": len(batch)
                    },
                    cause=e,
                    status_code=e.status_code,
                    attempts=1
                )
                report_error(error, "get_availability")
                raise error

            values = response.get("value")
            if isinstance(values, list):
                raw_results.extend(values)
            else:
                logger.warning("No value array in getSchedule response for batch %d", index + 1)

        return normalize_availability_results(raw_results)
