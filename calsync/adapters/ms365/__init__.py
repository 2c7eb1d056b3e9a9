"""
Microsoft 365 adapter package.

Provides normalized interfaces for MS365 calendar operations:
- calendar: CalendarService (event CRUD, respond, cancel, attachments)
- availability: Batched free/busy lookups
- meetings: Meeting time suggestions
- rooms: Room directory with TTL cache
- timezones: Zone alias mapping and per-user zone resolution
- attendees: Attendee name to email resolution
- _auth: Authenticated Graph client
"""

from ._auth import CredentialTokenAuth, GraphClient, get_graph_client
from .calendar import CalendarService
from .errors import CalendarError, ErrorKind, ValidationError

__all__ = [
    "CalendarError",
    "CalendarService",
    "CredentialTokenAuth",
    "ErrorKind",
    "GraphClient",
    "ValidationError",
    "get_graph_client",
]
