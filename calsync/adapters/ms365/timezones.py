"""
Timezone resolution for MS365 calendars.

Graph speaks Windows zone names ("W. Europe Standard Time") in the Prefer
header, callers speak whatever they like ("Oslo", "CET", "Europe/Oslo").
This module maps between the two and resolves each user's preferred zone
from their mailbox settings, with a per-user cache.
"""

import os
import logging
from typing import Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...services.cache import TTLCache
from ._auth import GraphClient, endpoint_path
from .errors import CalendarError, ErrorKind


logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "W. Europe Standard Time")

# Windows name used for IANA zones missing from IANA_TO_WINDOWS
FALLBACK_WINDOWS_ZONE = "W. Europe Standard Time"

# alias -> IANA (many-to-one)
TIMEZONE_ALIASES: Dict[str, str] = {
    # Windows names
    "Pacific Standard Time": "America/Los_Angeles",
    "Eastern Standard Time": "America/New_York",
    "Central Standard Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "US Mountain Standard Time": "America/Phoenix",
    "Alaskan Standard Time": "America/Anchorage",
    "Aleutian Standard Time": "America/Adak",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "W. Europe Standard Time": "Europe/Berlin",
    "GMT Standard Time": "Europe/London",
    "Romance Standard Time": "Europe/Paris",
    "Central Europe Standard Time": "Europe/Warsaw",
    "FLE Standard Time": "Europe/Helsinki",
    "Central European Standard Time": "Europe/Budapest",
    "E. Europe Standard Time": "Europe/Bucharest",
    "W. Central Africa Standard Time": "Africa/Lagos",
    "GTB Standard Time": "Europe/Athens",
    "Singapore Standard Time": "Asia/Singapore",
    "Tokyo Standard Time": "Asia/Tokyo",
    "China Standard Time": "Asia/Shanghai",
    "India Standard Time": "Asia/Kolkata",
    "Russia Time Zone 3": "Europe/Moscow",
    # Nordic names take priority over the generic W. Europe mapping
    "Northern Europe Standard Time": "Europe/Oslo",
    "SE Standard Time": "Europe/Stockholm",
    "DK Standard Time": "Europe/Copenhagen",
    # Informal names
    "Oslo": "Europe/Oslo",
    "Stockholm": "Europe/Stockholm",
    "Copenhagen": "Europe/Copenhagen",
    "Norway": "Europe/Oslo",
    "Sweden": "Europe/Stockholm",
    "Denmark": "Europe/Copenhagen",
    "Oslo Time": "Europe/Oslo",
    "Norway Time": "Europe/Oslo",
    "Norwegian Time": "Europe/Oslo",
    "Pacific Time": "America/Los_Angeles",
    "PST": "America/Los_Angeles",
    "Eastern Time": "America/New_York",
    "EST": "America/New_York",
    "Central Time": "America/Chicago",
    "CST": "America/Chicago",
    "Mountain Time": "America/Denver",
    "MST": "America/Denver",
    "GMT": "Europe/London",
    "UTC": "UTC",
    "CET": "Europe/Paris",
    "CEST": "Europe/Paris",
    "Central European Time": "Europe/Paris",
    "Central European Summer Time": "Europe/Paris",
}

# IANA ids used by mailbox settings and API callers pass through unchanged
TIMEZONE_ALIASES.update({iana: iana for iana in (
    "Europe/Oslo", "Europe/Stockholm", "Europe/Copenhagen", "Europe/Berlin",
    "Europe/Paris", "Europe/London", "Europe/Dublin", "Europe/Warsaw",
    "Europe/Budapest", "Europe/Prague", "Europe/Vienna", "Europe/Rome",
    "Europe/Madrid", "Europe/Lisbon", "Europe/Brussels", "Europe/Amsterdam",
    "Europe/Helsinki", "Europe/Athens", "Europe/Tallinn", "Europe/Riga",
    "Europe/Vilnius", "Europe/Moscow",
)})

# IANA -> Windows, for the Prefer: outlook.timezone header
IANA_TO_WINDOWS: Dict[str, str] = {
    # Americas
    "America/Los_Angeles": "Pacific Standard Time",
    "America/New_York": "Eastern Standard Time",
    "America/Chicago": "Central Standard Time",
    "America/Denver": "Mountain Standard Time",
    "America/Phoenix": "US Mountain Standard Time",
    "America/Anchorage": "Alaskan Standard Time",
    "America/Adak": "Aleutian Standard Time",
    "Pacific/Honolulu": "Hawaiian Standard Time",
    # Nordic
    "Europe/Oslo": "W. Europe Standard Time",
    "Europe/Stockholm": "W. Europe Standard Time",
    "Europe/Copenhagen": "W. Europe Standard Time",
    "Europe/Helsinki": "FLE Standard Time",
    # Western Europe
    "Europe/Berlin": "W. Europe Standard Time",
    "Europe/Amsterdam": "W. Europe Standard Time",
    "Europe/Brussels": "Romance Standard Time",
    "Europe/Paris": "Romance Standard Time",
    "Europe/London": "GMT Standard Time",
    "Europe/Dublin": "GMT Standard Time",
    "Europe/Lisbon": "GMT Standard Time",
    "Europe/Madrid": "Romance Standard Time",
    "Europe/Rome": "W. Europe Standard Time",
    "Europe/Vienna": "W. Europe Standard Time",
    # Central and Eastern Europe
    "Europe/Warsaw": "Central European Standard Time",
    "Europe/Prague": "Central European Standard Time",
    "Europe/Budapest": "Central European Standard Time",
    "Europe/Bucharest": "E. Europe Standard Time",
    "Europe/Athens": "GTB Standard Time",
    "Europe/Tallinn": "FLE Standard Time",
    "Europe/Riga": "FLE Standard Time",
    "Europe/Vilnius": "FLE Standard Time",
    "Europe/Moscow": "Russia Time Zone 3",
    # Asia
    "Asia/Singapore": "Singapore Standard Time",
    "Asia/Tokyo": "Tokyo Standard Time",
    "Asia/Shanghai": "China Standard Time",
    "Asia/Kolkata": "India Standard Time",
    # Other
    "UTC": "UTC",
    "Etc/UTC": "UTC",
}

_ALIASES_LOWER = {alias.lower(): iana for alias, iana in TIMEZONE_ALIASES.items()}
_WINDOWS_NAMES = set(IANA_TO_WINDOWS.values()) | {
    name for name in TIMEZONE_ALIASES if name.endswith("Standard Time")
}


def is_iana_zone(name: str) -> bool:
    if name == "UTC":
        return True
    if "/" not in name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def is_windows_zone(name: str) -> bool:
    """Provider-native names: known ones, or anything shaped like one."""
    return (
        name in _WINDOWS_NAMES
        or name.endswith(" Standard Time")
        or name.startswith("Russia Time Zone")
    )


def to_canonical(alias: Optional[str]) -> Optional[str]:
    """
    Map any alias (informal, Windows or IANA) to an IANA zone.

    Returns None when the alias is unknown.

    Example:
        to_canonical("Oslo")                    -> "Europe/Oslo"
        to_canonical("Pacific Standard Time")   -> "America/Los_Angeles"
        to_canonical("Asia/Kathmandu")          -> "Asia/Kathmandu"
        to_canonical("Atlantis")                -> None
    """
    if not alias or not isinstance(alias, str):
        return None
    name = alias.strip()
    if name in TIMEZONE_ALIASES:
        return TIMEZONE_ALIASES[name]
    if name.lower() in _ALIASES_LOWER:
        return _ALIASES_LOWER[name.lower()]
    if is_iana_zone(name):
        return name
    return None


def to_provider_alias(zone: Optional[str]) -> str:
    """
    Windows zone name for the Prefer: outlook.timezone header.

    Europe/Oslo is pinned explicitly because it appears under several
    Windows names across alias tables. Other IANA ids go through the
    reverse table; unmapped IANA ids get FALLBACK_WINDOWS_ZONE. Anything
    that does not look like an IANA id is assumed to be provider-native.
    """
    if not zone:
        return FALLBACK_WINDOWS_ZONE
    if zone == "Europe/Oslo":
        return "W. Europe Standard Time"
    if "/" in zone:
        windows = IANA_TO_WINDOWS.get(zone)
        if windows is None:
            logger.debug("No Windows mapping for %s, using %s", zone, FALLBACK_WINDOWS_ZONE)
            return FALLBACK_WINDOWS_ZONE
        return windows
    return zone


def prefer_header(zone: Optional[str]) -> Dict[str, str]:
    return {"Prefer": f'outlook.timezone="{to_provider_alias(zone)}"'}


def concrete_zone(zone: Optional[str]) -> Optional[str]:
    """An identifier Graph accepts as-is, or None if the input is unresolvable."""
    if not zone:
        return None
    canonical = to_canonical(zone)
    if canonical:
        return canonical
    if is_windows_zone(zone.strip()):
        return zone.strip()
    return None


ZoneStrategy = Callable[[Optional[str], str], Awaitable[Optional[str]]]


class TimezoneResolver:
    """
    Resolves the zone to use for a user and for outgoing event payloads.

    Args:
        client: Authenticated GraphClient
        cache: Per-user zone cache (shared across requests of one app instance)
        default_zone: Zone used when nothing else is available
    """

    def __init__(self, client: GraphClient, cache: TTLCache, default_zone: str = DEFAULT_TIMEZONE):
        self.client = client
        self.cache = cache
        self.default_zone = default_zone
        self.strategies: List[ZoneStrategy] = [
            self._from_mailbox,
            self._from_request,
            self._from_default,
        ]

    async def _lookup(self, user_id: str) -> Dict[str, object]:
        cache_key = f"timezone:{user_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        entry: Dict[str, object] = {"zone": self.default_zone, "from_mailbox": False}
        try:
            settings = await self.client.get(endpoint_path(user_id, "/mailboxSettings"))
            zone = settings.get("timeZone")
            if zone:
                entry = {"zone": zone, "from_mailbox": True}
            else:
                logger.warning("No timezone in mailbox settings, using default %s", self.default_zone)
        except CalendarError as e:
            if e.kind == ErrorKind.PERMISSION_DENIED:
                logger.info("No permission to read mailbox settings, using default %s", self.default_zone)
            else:
                logger.warning(
                    "Could not read mailbox settings (%s), using default %s",
                    e.kind.value, self.default_zone
                )

        # Defaults are cached too so a failing endpoint is not hammered
        self.cache.set(cache_key, entry)
        return entry

    async def resolve_user_time_zone(self, user_id: str = "me") -> str:
        """
        Preferred zone from the user's mailbox settings, or the default.

        Never raises for provider errors.
        """
        entry = await self._lookup(user_id)
        return entry["zone"]

    async def _from_mailbox(self, requested: Optional[str], user_id: str) -> Optional[str]:
        entry = await self._lookup(user_id)
        if not entry["from_mailbox"]:
            return None
        return concrete_zone(entry["zone"])

    async def _from_request(self, requested: Optional[str], user_id: str) -> Optional[str]:
        return concrete_zone(requested)

    async def _from_default(self, requested: Optional[str], user_id: str) -> Optional[str]:
        return concrete_zone(self.default_zone) or "UTC"

    async def resolve_event_zone(self, requested: Optional[str] = None, user_id: str = "me") -> str:
        """
        Concrete zone for an event payload.

        Strategies run in order (mailbox setting, caller-supplied zone,
        default); the first one returning a value wins.
        """
        for strategy in self.strategies:
            zone = await strategy(requested, user_id)
            if zone:
                return zone
        return "UTC"

    async def resolve_query_zone(self, requested: Optional[str] = None, user_id: str = "me") -> str:
        """
        Zone for read queries: the caller's zone when given (aliases mapped to
        IANA), otherwise the user's preferred zone.
        """
        if requested:
            return to_canonical(requested) or requested
        return await self.resolve_user_time_zone(user_id)
