"""
Tests for CalendarService: event create/update/respond/cancel, reads and
attachments.
"""

import base64
import logging

import pytest

from calsync.adapters.ms365.calendar import (
    MAX_ATTACHMENT_SIZE,
    build_patch,
    build_event_payload,
)
from calsync.adapters.ms365.errors import CalendarError, ErrorKind, ValidationError
from calsync.adapters.ms365.normalizers import normalize_event
from calsync.models import EventDraft, EventTime


EVENT_PATH = "/me/events/AAMk-1"
MAILBOX = "/me/mailboxSettings"


def draft(**overrides):
    data = {
        "subject": "Quarterly planning",
        "start": {"date_time": "2025-05-01T10:00:00", "time_zone": "Oslo"},
        "end": {"date_time": "2025-05-01T11:00:00", "time_zone": "Oslo"},
        "attendees": ["ada@contoso.com", "Grace Hopper"],
    }
    data.update(overrides)
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Payload builders
# ─────────────────────────────────────────────────────────────────────────────


class TestPayloads:

    def test_event_payload_shape(self):
        event = EventDraft(
            subject="Sync",
            body="Agenda",
            start=EventTime(date_time="2025-05-01T10:00:00", time_zone="Oslo"),
            end=EventTime(date_time="2025-05-01T10:30:00"),
            location="Room 42",
            is_online_meeting=True
        )
        attendees = [{"emailAddress": {"address": "ada@contoso.com", "name": "ada"}, "type": "required"}]

        payload = build_event_payload(event, "Europe/Oslo", attendees)

        assert payload == {
            "subject": "Sync",
            "body": {"contentType": "HTML", "content": "Agenda"},
            "start": {"dateTime": "2025-05-01T10:00:00", "timeZone": "Europe/Oslo"},
            "end": {"dateTime": "2025-05-01T10:30:00", "timeZone": "Europe/Oslo"},
            "location": {"displayName": "Room 42"},
            "attendees": attendees,
            "isOnlineMeeting": True
        }

    def test_patch_contains_only_set_fields(self):
        changes = EventDraft(subject="Renamed")

        assert build_patch(changes, "UTC") == {"subject": "Renamed"}

    def test_patch_can_clear_attendees(self):
        changes = EventDraft(attendees=[])

        assert build_patch(changes, "UTC", attendees=[]) == {"attendees": []}


# ─────────────────────────────────────────────────────────────────────────────
# Create
# ─────────────────────────────────────────────────────────────────────────────


class TestCreateEvent:

    @pytest.mark.asyncio
    async def test_creates_with_resolved_zone_and_attendees(self, graph, service, raw_event):
        graph.error("GET", MAILBOX, 403)
        graph.add("POST", "/me/events", 201, json=raw_event)

        event = await service.create_event(draft())

        call = graph.calls_to("POST", "/me/events")[0]
        assert call.headers["Prefer"] == 'outlook.timezone="W. Europe Standard Time"'
        assert call.json["start"] == {"dateTime": "2025-05-01T10:00:00", "timeZone": "Europe/Oslo"}
        assert call.json["end"]["timeZone"] == "Europe/Oslo"
        assert [a["emailAddress"]["address"] for a in call.json["attendees"]] == [
            "ada@contoso.com", "grace@contoso.com"
        ]
        assert event.id == "AAMk-1"
        assert event.etag == 'W/"DwAAABYAAAA1"'

    @pytest.mark.asyncio
    async def test_mailbox_zone_takes_precedence(self, graph, service, raw_event):
        graph.add("GET", MAILBOX, json={"timeZone": "Pacific Standard Time"})
        graph.add("POST", "/me/events", 201, json=raw_event)

        await service.create_event(draft())

        call = graph.calls_to("POST", "/me/events")[0]
        assert call.json["start"]["timeZone"] == "America/Los_Angeles"
        assert call.headers["Prefer"] == 'outlook.timezone="Pacific Standard Time"'

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, graph, service, sleeps, raw_event):
        graph.error("POST", "/me/events", 503)
        graph.error("POST", "/me/events", 429, headers={"Retry-After": "2"})
        graph.add("POST", "/me/events", 201, json=raw_event)

        event = await service.create_event(draft())

        assert len(graph.calls_to("POST", "/me/events")) == 3
        assert sleeps.delays == [1.0, 2.0]
        assert event.subject == "Quarterly planning"

    @pytest.mark.asyncio
    async def test_exhausted_retries_carry_attempts(self, graph, service):
        graph.error("POST", "/me/events", 503)

        with pytest.raises(CalendarError) as exc_info:
            await service.create_event(draft())

        assert exc_info.value.kind == ErrorKind.SERVER_ERROR
        assert exc_info.value.attempts == 3
        assert len(graph.calls_to("POST", "/me/events")) == 3

    @pytest.mark.asyncio
    async def test_bad_request_is_fatal(self, graph, service):
        graph.error("POST", "/me/events", 400, "Invalid recipients")

        with pytest.raises(CalendarError) as exc_info:
            await service.create_event(draft())

        assert exc_info.value.kind == ErrorKind.OTHER
        assert exc_info.value.attempts == 1
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"subject": ""},
        {"subject": None},
        {"start": None},
        {"end": {"date_time": "not a date"}},
        {"end": {"date_time": "2025-05-01T09:00:00"}},
    ])
    async def test_validation_happens_before_any_request(self, graph, service, overrides):
        with pytest.raises(ValidationError):
            await service.create_event(draft(**overrides))

        assert graph.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,param", [
        ({"start": {"time_zone": "UTC"}}, "start.date_time"),
        ({"end": "2025-05-01T10:00:00"}, "end"),
        ({"attendees": "ada@contoso.com"}, "attendees"),
    ])
    async def test_malformed_draft_raises_validation_error(self, graph, service, overrides, param):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_event(draft(**overrides))

        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.context["param"] == param
        assert graph.calls == []

    @pytest.mark.asyncio
    async def test_user_address_never_logged(self, graph, service, caplog):
        caplog.set_level(logging.DEBUG, logger="calsync")
        graph.add("GET", "/users/jane.doe@contoso.com/mailboxSettings", json={"timeZone": "UTC"})
        graph.error("POST", "/users/jane.doe@contoso.com/events", 400, "Invalid recipients")

        with pytest.raises(CalendarError) as exc_info:
            await service.create_event(draft(attendees=[]), user_id="jane.doe@contoso.com")

        records = [r for r in caplog.records if r.name.startswith("calsync")]
        assert records
        for record in records:
            assert "jane.doe" not in record.getMessage()
            assert "jane.doe" not in str(getattr(record, "context", ""))
        assert "jane.doe" not in str(exc_info.value.to_dict())
        assert "ja***%40contoso.com" in exc_info.value.to_dict()["context"]["endpoint"]


# ─────────────────────────────────────────────────────────────────────────────
# Update
# ─────────────────────────────────────────────────────────────────────────────


class TestUpdateEvent:

    @pytest.mark.asyncio
    async def test_partial_patch_with_if_match(self, graph, service, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.add("PATCH", EVENT_PATH, json={**raw_event, "subject": "Renamed"})

        event = await service.update_event("AAMk-1", {"subject": "Renamed"})

        patch = graph.calls_to("PATCH", EVENT_PATH)[0]
        assert patch.json == {"subject": "Renamed"}
        assert patch.headers["If-Match"] == 'W/"DwAAABYAAAA1"'
        assert "outlook.timezone" in patch.headers["Prefer"]
        assert event.subject == "Renamed"

    @pytest.mark.asyncio
    async def test_single_refetch_on_conflict(self, graph, service, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.add("GET", EVENT_PATH, json={**raw_event, "@odata.etag": 'W/"fresh"'})
        graph.error("PATCH", EVENT_PATH, 412, "Precondition failed")
        graph.add("PATCH", EVENT_PATH, json=raw_event)

        await service.update_event("AAMk-1", {"subject": "Renamed"})

        patches = graph.calls_to("PATCH", EVENT_PATH)
        assert len(patches) == 2
        assert patches[1].headers["If-Match"] == 'W/"fresh"'
        assert len(graph.calls_to("GET", EVENT_PATH)) == 2

    @pytest.mark.asyncio
    async def test_second_conflict_propagates(self, graph, service, raw_event):
        """412 twice: one refetch-and-retry, then the error, never a third attempt."""
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.error("PATCH", EVENT_PATH, 412, "Precondition failed")

        with pytest.raises(CalendarError) as exc_info:
            await service.update_event("AAMk-1", {"subject": "Renamed"})

        assert exc_info.value.kind == ErrorKind.CONCURRENCY_CONFLICT
        assert len(graph.calls_to("PATCH", EVENT_PATH)) == 2
        assert len(graph.calls_to("GET", EVENT_PATH)) == 2

    @pytest.mark.asyncio
    async def test_conflict_retry_is_outside_transient_budget(self, graph, service, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.error("PATCH", EVENT_PATH, 412)
        graph.error("PATCH", EVENT_PATH, 503)
        graph.error("PATCH", EVENT_PATH, 503)
        graph.add("PATCH", EVENT_PATH, json=raw_event)

        await service.update_event("AAMk-1", {"subject": "Renamed"})

        assert len(graph.calls_to("PATCH", EVENT_PATH)) == 4

    @pytest.mark.asyncio
    async def test_missing_event_is_not_found(self, graph, service):
        graph.error("GET", EVENT_PATH, 404, "The specified object was not found in the store.")

        with pytest.raises(CalendarError) as exc_info:
            await service.update_event("AAMk-1", {"subject": "Renamed"})

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert graph.calls_to("PATCH", EVENT_PATH) == []

    @pytest.mark.asyncio
    async def test_malformed_changes_raise_validation_error(self, graph, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.update_event("AAMk-1", {"start": {"time_zone": "UTC"}})

        assert exc_info.value.context["param"] == "start.date_time"
        assert graph.calls == []

    @pytest.mark.asyncio
    async def test_caller_zone_wins_when_moving_times(self, graph, service, raw_event):
        graph.add("GET", MAILBOX, json={"timeZone": "W. Europe Standard Time"})
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.add("PATCH", EVENT_PATH, json=raw_event)

        await service.update_event("AAMk-1", {
            "start": {"date_time": "2025-05-01T10:00:00", "time_zone": "Pacific Standard Time"},
            "end": {"date_time": "2025-05-01T11:00:00", "time_zone": "Pacific Standard Time"},
        })

        patch = graph.calls_to("PATCH", EVENT_PATH)[0]
        assert patch.json["start"] == {"dateTime": "2025-05-01T10:00:00", "timeZone": "America/Los_Angeles"}
        assert patch.json["end"]["timeZone"] == "America/Los_Angeles"
        assert patch.headers["Prefer"] == 'outlook.timezone="Pacific Standard Time"'

    @pytest.mark.asyncio
    async def test_mailbox_zone_used_when_caller_gives_none(self, graph, service, raw_event):
        graph.add("GET", MAILBOX, json={"timeZone": "Pacific Standard Time"})
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.add("PATCH", EVENT_PATH, json=raw_event)

        await service.update_event("AAMk-1", {"start": {"date_time": "2025-05-01T10:00:00"}})

        patch = graph.calls_to("PATCH", EVENT_PATH)[0]
        assert patch.json["start"]["timeZone"] == "America/Los_Angeles"

    @pytest.mark.asyncio
    async def test_refetch_after_empty_patch_response_is_retried(self, graph, service, sleeps, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.error("GET", EVENT_PATH, 503)
        graph.add("GET", EVENT_PATH, json={**raw_event, "subject": "Renamed"})
        graph.add("PATCH", EVENT_PATH, 204)

        event = await service.update_event("AAMk-1", {"subject": "Renamed"})

        assert event.subject == "Renamed"
        assert len(graph.calls_to("GET", EVENT_PATH)) == 3
        assert sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_refetch_after_patch_failure_is_wrapped(self, graph, service, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.error("GET", EVENT_PATH, 404)
        graph.add("PATCH", EVENT_PATH, 204)

        with pytest.raises(CalendarError) as exc_info:
            await service.update_event("AAMk-1", {"subject": "Renamed"})

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert exc_info.value.message.startswith("Event not found")

    @pytest.mark.asyncio
    async def test_round_trip_preserves_fields(self, graph, service, raw_event):
        """normalize -> to_draft -> patch keeps subject, date-times and emails."""
        graph.add("GET", EVENT_PATH, json=raw_event)
        graph.add("PATCH", EVENT_PATH, json=raw_event)

        changes = normalize_event(raw_event).to_draft()
        await service.update_event("AAMk-1", changes)

        patch = graph.calls_to("PATCH", EVENT_PATH)[0].json
        assert patch["subject"] == raw_event["subject"]
        assert patch["start"]["dateTime"] == raw_event["start"]["dateTime"]
        assert patch["end"]["dateTime"] == raw_event["end"]["dateTime"]
        assert [a["emailAddress"]["address"] for a in patch["attendees"]] == [
            a["emailAddress"]["address"] for a in raw_event["attendees"]
        ]

    @pytest.mark.asyncio
    async def test_empty_patch_skips_request(self, graph, service, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)

        event = await service.update_event("AAMk-1", {})

        assert graph.calls_to("PATCH", EVENT_PATH) == []
        assert event.id == "AAMk-1"


# ─────────────────────────────────────────────────────────────────────────────
# Respond / cancel
# ─────────────────────────────────────────────────────────────────────────────


class TestRespondAndCancel:

    @pytest.mark.asyncio
    async def test_accept(self, graph, service):
        graph.add("POST", f"{EVENT_PATH}/accept", 202)

        confirmation = await service.accept_event("AAMk-1", "See you there")

        call = graph.calls_to("POST", f"{EVENT_PATH}/accept")[0]
        assert call.json == {"comment": "See you there", "sendResponse": True}
        assert confirmation.success is True
        assert confirmation.action == "accept"

    @pytest.mark.asyncio
    async def test_tentative_and_decline_paths(self, graph, service):
        graph.add("POST", f"{EVENT_PATH}/tentativelyAccept", 202)
        graph.add("POST", f"{EVENT_PATH}/decline", 202)

        await service.tentatively_accept_event("AAMk-1")
        await service.decline_event("AAMk-1", send_response=False)

        assert graph.calls_to("POST", f"{EVENT_PATH}/decline")[0].json["sendResponse"] is False

    @pytest.mark.asyncio
    async def test_invalid_response_type(self, graph, service):
        with pytest.raises(ValidationError):
            await service.respond_to_event("AAMk-1", "maybe")
        assert graph.calls == []

    @pytest.mark.asyncio
    async def test_cancel_with_notification(self, graph, service):
        graph.add("POST", f"{EVENT_PATH}/cancel", 202)

        confirmation = await service.cancel_event("AAMk-1", "Moved to next week")

        assert graph.calls_to("POST", f"{EVENT_PATH}/cancel")[0].json == {"comment": "Moved to next week"}
        assert confirmation.action == "cancel"
        assert confirmation.notified is True

    @pytest.mark.asyncio
    async def test_silent_cancel_deletes(self, graph, service):
        graph.add("DELETE", EVENT_PATH, 204)

        confirmation = await service.cancel_event("AAMk-1", send_cancellation=False)

        assert len(graph.calls_to("DELETE", EVENT_PATH)) == 1
        assert confirmation.action == "delete"

    @pytest.mark.asyncio
    async def test_echoed_id_counts_as_success(self, graph, service):
        graph.add("POST", f"{EVENT_PATH}/cancel", 200, json={"id": "AAMk-1"})

        confirmation = await service.cancel_event("AAMk-1")

        assert confirmation.success is True

    @pytest.mark.asyncio
    async def test_unexpected_body_is_an_error(self, graph, service):
        graph.add("POST", f"{EVENT_PATH}/cancel", 200, json={"status": "queued"})

        with pytest.raises(CalendarError) as exc_info:
            await service.cancel_event("AAMk-1")

        assert exc_info.value.kind == ErrorKind.OTHER

    @pytest.mark.asyncio
    async def test_cancel_retries_rate_limits(self, graph, service, sleeps):
        graph.error("POST", f"{EVENT_PATH}/cancel", 429)
        graph.add("POST", f"{EVENT_PATH}/cancel", 202)

        await service.cancel_event("AAMk-1")

        assert len(sleeps.delays) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────


class TestReads:

    @pytest.mark.asyncio
    async def test_list_events_with_date_filter(self, graph, service, raw_event):
        graph.add("GET", "/me/events", json={"value": [raw_event]})

        events = await service.list_events(start="2025-05-01", end="2025-05-07", time_zone="UTC")

        params = graph.calls_to("GET", "/me/events")[0].params
        assert params["$filter"] == (
            "start/dateTime ge '2025-05-01T00:00:00' and end/dateTime le '2025-05-07T23:59:59'"
        )
        assert params["$top"] == "50"
        assert events[0].attendees[0].response == "accepted"

    @pytest.mark.asyncio
    async def test_list_events_rejects_datetime(self, service):
        with pytest.raises(ValidationError):
            await service.list_events(start="2025-05-01T00:00:00")

    @pytest.mark.asyncio
    async def test_get_event(self, graph, service, raw_event):
        graph.add("GET", EVENT_PATH, json=raw_event)

        event = await service.get_event("AAMk-1", time_zone="Oslo")

        assert event.organizer.email == "ada@contoso.com"
        assert graph.calls_to("GET", EVENT_PATH)[0].headers["Prefer"] == \
            'outlook.timezone="W. Europe Standard Time"'

    @pytest.mark.asyncio
    async def test_get_calendars_merges_shared(self, graph, service):
        graph.add("GET", "/me/calendars", json={"value": [
            {"id": "c1", "name": "Calendar", "isDefaultCalendar": True, "canEdit": True}
        ]})
        graph.add("GET", "/me/calendarGroups/calendars", json={"value": [
            {"id": "c1", "name": "Calendar"},
            {"id": "c2", "name": "Team", "owner": {"name": "Ada", "address": "ada@contoso.com"}},
        ]})

        calendars = await service.get_calendars()

        assert [c.id for c in calendars] == ["c1", "c2"]
        assert calendars[0].is_default_calendar is True
        assert calendars[1].is_delegated is True

    @pytest.mark.asyncio
    async def test_shared_calendar_failure_is_tolerated(self, graph, service):
        graph.add("GET", "/me/calendars", json={"value": [{"id": "c1"}]})
        graph.error("GET", "/me/calendarGroups/calendars", 403)

        calendars = await service.get_calendars()

        assert [c.id for c in calendars] == ["c1"]


# ─────────────────────────────────────────────────────────────────────────────
# Attachments
# ─────────────────────────────────────────────────────────────────────────────


class TestAttachments:

    @pytest.mark.asyncio
    async def test_bytes_are_base64_encoded(self, graph, service):
        graph.add("POST", f"{EVENT_PATH}/attachments", 201, json={
            "id": "att-1", "name": "agenda.txt", "contentType": "text/plain", "size": 5
        })

        attachment = await service.add_event_attachment("AAMk-1", "agenda.txt", "text/plain", b"hello")

        body = graph.calls_to("POST", f"{EVENT_PATH}/attachments")[0].json
        assert body["@odata.type"] == "#microsoft.graph.fileAttachment"
        assert base64.b64decode(body["contentBytes"]) == b"hello"
        assert body["size"] == 5
        assert attachment.id == "att-1"

    @pytest.mark.asyncio
    async def test_oversized_attachment_rejected(self, graph, service):
        content = b"x" * (MAX_ATTACHMENT_SIZE + 1)

        with pytest.raises(ValidationError):
            await service.add_event_attachment("AAMk-1", "big.bin", "application/octet-stream", content)

        assert graph.calls == []

    @pytest.mark.asyncio
    async def test_remove_attachment(self, graph, service):
        path = f"{EVENT_PATH}/attachments/att-1"
        graph.add("GET", path, json={"id": "att-1", "name": "agenda.txt"})
        graph.add("DELETE", path, 204)

        confirmation = await service.remove_event_attachment("AAMk-1", "att-1")

        assert confirmation.detail == "agenda.txt"
        assert len(graph.calls_to("DELETE", path)) == 1
