"""Shared test fixtures for calsync tests.

Graph is replaced by an httpx.MockTransport-backed fake that records every
request and replays queued responses per (method, path):

    def test_something(graph, graph_client):
        graph.add("GET", "/me/mailboxSettings", json={"timeZone": "UTC"})
        ...
        assert len(graph.calls_to("GET", "/me/mailboxSettings")) == 1
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from calsync.adapters.ms365._auth import GraphClient
from calsync.adapters.ms365._retry import RetryPolicy
from calsync.adapters.ms365.calendar import CalendarService
from calsync.services.cache import CalendarCaches


GRAPH_TEST_BASE = "https://graph.test/v1.0"


# ─────────────────────────────────────────────────────────────────────────────
# Fake Graph
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class RecordedCall:
    method: str
    path: str
    params: Dict[str, str]
    headers: httpx.Headers
    json: Optional[Any]


Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


@dataclass
class FakeGraph:
    """Queued responses per route; the last queued response repeats."""

    routes: Dict[Tuple[str, str], List[Responder]] = field(default_factory=dict)
    calls: List[RecordedCall] = field(default_factory=list)

    def add(self, method: str, path: str, status: int = 200, json: Any = None, headers=None) -> None:
        response = httpx.Response(status, json=json, headers=headers) if json is not None \
            else httpx.Response(status, headers=headers)
        self.routes.setdefault((method, path), []).append(response)

    def add_handler(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes.setdefault((method, path), []).append(handler)

    def error(self, method: str, path: str, status: int, message: str = "error", headers=None) -> None:
        self.add(method, path, status, json={"error": {"code": str(status), "message": message}}, headers=headers)

    def calls_to(self, method: str, path: str) -> List[RecordedCall]:
        return [c for c in self.calls if c.method == method and c.path == path]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/v1.0"):
            path = path[len("/v1.0"):]
        body = json.loads(request.content) if request.content else None
        self.calls.append(RecordedCall(
            method=request.method,
            path=path,
            params=dict(request.url.params),
            headers=request.headers,
            json=body
        ))

        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"error": {"code": "ResourceNotFound", "message": "no route"}})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder):
            return responder(request)
        return responder


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakePeople:
    """PeopleLookup returning canned matches and counting calls per name."""

    def __init__(self, directory: Optional[Dict[str, str]] = None, failing: Tuple[str, ...] = ()):
        self.directory = directory or {}
        self.failing = failing
        self.calls: List[str] = []

    async def search_by_name(self, name: str):
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError("lookup backend down")
        email = self.directory.get(name)
        if email is None:
            return None
        return {"email": email, "name": name}


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def graph_client(graph: FakeGraph) -> GraphClient:
    http = httpx.AsyncClient(base_url=GRAPH_TEST_BASE, transport=httpx.MockTransport(graph.handle))
    return GraphClient(http)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def caches(clock: FakeClock) -> CalendarCaches:
    return CalendarCaches(clock=clock)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def people() -> FakePeople:
    return FakePeople({"Grace Hopper": "grace@contoso.com"})


@pytest.fixture
def service(graph_client, caches, people, sleeps) -> CalendarService:
    return CalendarService(
        graph_client,
        caches,
        people=people,
        retry=RetryPolicy(sleep=sleeps, rng=lambda: 0.0)
    )


@pytest.fixture
def raw_event() -> Dict[str, Any]:
    """A Graph event as returned by GET /me/events/{id}."""
    return {
        "@odata.etag": 'W/"DwAAABYAAAA1"',
        "id": "AAMk-1",
        "subject": "Quarterly planning",
        "body": {"contentType": "html", "content": "<p>Agenda</p>"},
        "bodyPreview": "Agenda",
        "start": {"dateTime": "2025-05-01T10:00:00.0000000", "timeZone": "Europe/Oslo"},
        "end": {"dateTime": "2025-05-01T11:00:00.0000000", "timeZone": "Europe/Oslo"},
        "location": {"displayName": "Room 42"},
        "attendees": [
            {
                "type": "required",
                "status": {"response": "accepted"},
                "emailAddress": {"address": "ada@contoso.com", "name": "Ada Lovelace"}
            },
            {
                "type": "optional",
                "status": {"response": "none"},
                "emailAddress": {"address": "grace@contoso.com", "name": "Grace Hopper"}
            }
        ],
        "isOnlineMeeting": False,
        "responseStatus": {"response": "organizer"},
        "organizer": {"emailAddress": {"address": "ada@contoso.com", "name": "Ada Lovelace"}},
        "isAllDay": False,
        "isCancelled": False,
        "webLink": "https://outlook.office365.com/owa/?itemid=AAMk-1"
    }
