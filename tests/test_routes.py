"""
Tests for the calendar HTTP routes.

The per-credential CalendarService dependency is overridden with one wired
to the fake Graph, so no Auth service or network is involved.
"""

import pytest
from fastapi.testclient import TestClient

from calsync.main import app
from calsync.routes.calendar import get_calendar_service


BASE = "/calendar/ms365/cred-1"


@pytest.fixture
def client(service):
    async def override():
        yield service

    app.dependency_overrides[get_calendar_service] = override
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestRoutes:

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_create_event(self, client, graph, raw_event):
        graph.add("POST", "/me/events", 201, json=raw_event)

        response = client.post(f"{BASE}/events", json={
            "subject": "Quarterly planning",
            "start": {"date_time": "2025-05-01T10:00:00", "time_zone": "Oslo"},
            "end": {"date_time": "2025-05-01T11:00:00", "time_zone": "Oslo"},
            "attendees": ["ada@contoso.com"]
        })

        assert response.status_code == 201
        assert response.json()["id"] == "AAMk-1"

    def test_validation_error_maps_to_400(self, client, graph):
        response = client.post(f"{BASE}/events", json={"subject": "No times"})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["kind"] == "ValidationError"
        assert detail["retryable"] is False
        assert graph.calls == []

    def test_update_only_sends_fields_in_body(self, client, graph, raw_event):
        graph.add("GET", "/me/events/AAMk-1", json=raw_event)
        graph.add("PATCH", "/me/events/AAMk-1", json=raw_event)

        response = client.patch(f"{BASE}/events/AAMk-1", json={"location": "Room 7"})

        assert response.status_code == 200
        assert graph.calls_to("PATCH", "/me/events/AAMk-1")[0].json == {
            "location": {"displayName": "Room 7"}
        }

    def test_conflict_maps_to_409(self, client, graph, raw_event):
        graph.add("GET", "/me/events/AAMk-1", json=raw_event)
        graph.error("PATCH", "/me/events/AAMk-1", 412)

        response = client.patch(f"{BASE}/events/AAMk-1", json={"subject": "Renamed"})

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "ConcurrencyConflict"

    def test_respond(self, client, graph):
        graph.add("POST", "/me/events/AAMk-1/decline", 202)

        response = client.post(f"{BASE}/events/AAMk-1/respond", json={"response": "decline"})

        assert response.json()["action"] == "decline"

    def test_rooms_with_filters(self, client, graph):
        graph.add("GET", "/places/microsoft.graph.room", json={"value": [
            {"id": "r1", "displayName": "Conference Floor 3", "capacity": 12},
            {"id": "r2", "displayName": "Conference Floor 4", "capacity": 12},
        ]})

        response = client.get(f"{BASE}/rooms", params={"floor": "3", "min_capacity": 10})

        assert [r["id"] for r in response.json()["rooms"]] == ["r1"]

    def test_availability(self, client, graph):
        graph.add("POST", "/me/calendar/getSchedule", json={"value": [
            {"scheduleId": "ada@contoso.com", "availabilityView": "02"}
        ]})

        response = client.post(f"{BASE}/availability", json={
            "emails": ["ada@contoso.com"],
            "start": "2025-05-01T08:00:00",
            "end": "2025-05-01T09:00:00",
            "time_zone": "UTC"
        })

        assert response.json()[0]["is_busy"] is True

    def test_timezone(self, client, graph):
        graph.add("GET", "/me/mailboxSettings", json={"timeZone": "Tokyo Standard Time"})

        assert client.get(f"{BASE}/timezone").json() == {"time_zone": "Tokyo Standard Time"}
