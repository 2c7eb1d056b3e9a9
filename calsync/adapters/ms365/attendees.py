"""
Attendee resolution.

Callers pass attendees in several shapes: plain email strings, bare display
names, {"email", "name", "type"} objects or Graph-style
{"emailAddress": {...}, "type"} objects. Valid addresses are formatted
directly; names are looked up through a PeopleLookup, concurrently and at
most once per distinct name per call. A failed lookup drops only that
attendee.
"""

import asyncio
import os
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from ...models import Attendee, AttendeeType, Resolution
from .people import PeopleLookup


logger = logging.getLogger(__name__)

ATTENDEE_LOOKUP_CONCURRENCY = int(os.getenv("ATTENDEE_LOOKUP_CONCURRENCY", "8"))

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+'-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.[A-Za-z]{2,}$")

RawAttendee = Union[str, Dict[str, Any]]


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_RE.match(value.strip()))


def _attendee_type(value: Any, default: AttendeeType = AttendeeType.REQUIRED) -> AttendeeType:
    try:
        return AttendeeType(value)
    except ValueError:
        return default


def to_graph_attendee(attendee: Attendee) -> Dict[str, Any]:
    return {
        "emailAddress": {"address": attendee.email, "name": attendee.name},
        "type": attendee.type.value
    }


@dataclass
class _Pending:
    index: int
    name: str
    display_name: Optional[str]
    type: AttendeeType


def _classify(raw: RawAttendee):
    """
    Returns an Attendee for directly usable input, a (name, display_name, type)
    tuple for input that needs a lookup, or None for unusable input.
    """
    if isinstance(raw, str):
        value = raw.strip()
        if is_valid_email(value):
            return Attendee(email=value, name=value.split("@")[0])
        if value and "@" not in value:
            return (value, None, AttendeeType.REQUIRED)
        return None

    if not isinstance(raw, dict):
        return None

    attendee_type = _attendee_type(raw.get("type"))
    nested = raw.get("emailAddress") if isinstance(raw.get("emailAddress"), dict) else {}
    address = raw.get("email") or nested.get("address") or ""
    address = address.strip() if isinstance(address, str) else ""
    name = raw.get("name") or nested.get("name")
    if not isinstance(name, str):
        name = None

    if is_valid_email(address):
        return Attendee(email=address, name=name or address.split("@")[0], type=attendee_type)
    if address and "@" not in address:
        return (address, name, attendee_type)
    if not address and name:
        return (name.strip(), name, attendee_type)
    return None


class AttendeeResolver:
    """
    Turns raw attendee input into Graph attendee payloads.

    Args:
        people: Lookup used for bare names (None disables name resolution)
        max_concurrency: Upper bound on simultaneous lookups
    """

    def __init__(self, people: Optional[PeopleLookup], max_concurrency: int = ATTENDEE_LOOKUP_CONCURRENCY):
        self.people = people
        self.max_concurrency = max(1, max_concurrency)

    async def resolve_detailed(self, attendees: Optional[Sequence[RawAttendee]]) -> List[Attendee]:
        """
        Resolve every attendee, keeping input order.

        Attendees that could not be resolved are included with
        resolution=UNRESOLVED and no email.
        """
        if not attendees:
            return []

        results: List[Optional[Attendee]] = [None] * len(attendees)
        pending: List[_Pending] = []

        for index, raw in enumerate(attendees):
            classified = _classify(raw)
            if isinstance(classified, Attendee):
                results[index] = classified
            elif classified is None:
                logger.info("Dropping attendee at index %d: no usable address or name", index)
                results[index] = Attendee(resolution=Resolution.UNRESOLVED)
            else:
                name, display_name, attendee_type = classified
                pending.append(_Pending(index, name, display_name, attendee_type))

        if pending:
            matches = await self._lookup_all([p.name for p in pending])
            for item in pending:
                match = matches.get(item.name)
                if match:
                    results[item.index] = Attendee(
                        email=match["email"],
                        name=item.display_name or match.get("name") or item.name,
                        type=item.type,
                        resolution=Resolution.RESOLVED
                    )
                else:
                    results[item.index] = Attendee(
                        name=item.display_name or item.name,
                        type=item.type,
                        resolution=Resolution.UNRESOLVED
                    )

        resolved = [a for a in results if a is not None]
        dropped = sum(1 for a in resolved if a.resolution == Resolution.UNRESOLVED)
        logger.info(
            "Resolved %d attendees (%d looked up, %d dropped)",
            len(resolved) - dropped, len(pending), dropped
        )
        return resolved

    async def resolve(self, attendees: Optional[Sequence[RawAttendee]]) -> List[Dict[str, Any]]:
        """Graph attendee payloads for every attendee that has an address."""
        detailed = await self.resolve_detailed(attendees)
        return [
            to_graph_attendee(a) for a in detailed
            if a.resolution != Resolution.UNRESOLVED and a.email
        ]

    async def _lookup_all(self, names: List[str]) -> Dict[str, Optional[Dict[str, str]]]:
        """One lookup per distinct name, run concurrently; failures map to None."""
        distinct = list(dict.fromkeys(names))
        if self.people is None:
            return {name: None for name in distinct}

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def lookup(name: str):
            async with semaphore:
                return await self.people.search_by_name(name)

        outcomes = await asyncio.gather(*(lookup(n) for n in distinct), return_exceptions=True)

        matches: Dict[str, Optional[Dict[str, str]]] = {}
        for name, outcome in zip(distinct, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Attendee lookup failed: %s", outcome.__class__.__name__)
                matches[name] = None
            elif not outcome or not is_valid_email(outcome.get("email")):
                matches[name] = None
            else:
                matches[name] = outcome
        return matches
