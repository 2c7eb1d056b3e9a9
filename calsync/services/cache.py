"""
In-memory TTL cache.

Explicit cache objects replace module-level dictionaries so that each app
instance (or tenant) owns its own state and tests can drive time through an
injected clock.
"""

import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional


TIMEZONE_CACHE_TTL_SECONDS = float(os.getenv("TIMEZONE_CACHE_TTL_SECONDS", str(60 * 60)))
ROOMS_CACHE_TTL_SECONDS = float(os.getenv("ROOMS_CACHE_TTL_SECONDS", str(24 * 60 * 60)))


@dataclass
class CacheEntry:
    """A cached value and the moment it was stored."""
    value: Any
    timestamp: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.timestamp < self.ttl


class TTLCache:
    """
    Bounded key/value cache with per-entry time-to-live.

    Entries stay in the cache after they expire so callers can still fall
    back to them via get_entry_stale(). The oldest entry is evicted once
    max_entries is exceeded.

    Example:
        cache = TTLCache(ttl=3600)
        cache.set("timezone:me", "W. Europe Standard Time")
        cache.get("timezone:me")
    """

    def __init__(
        self,
        ttl: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic
    ):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value if present and unexpired, else None."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self.clock()):
            return None
        return entry.value

    def get_entry_stale(self, key: Hashable) -> Optional[CacheEntry]:
        """Return the entry regardless of age (None if never cached)."""
        return self._entries.get(key)

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            value=value,
            timestamp=self.clock(),
            ttl=ttl if ttl is not None else self.ttl
        )
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        fresh = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return {
            "entries": len(self._entries),
            "fresh": fresh,
            "expired": len(self._entries) - fresh,
            "max_entries": self.max_entries
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries


class CalendarCaches:
    """
    Process-lifetime caches shared by the calendar components of one app
    instance: preferred timezone per user and the room directory snapshot.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.timezones = TTLCache(ttl=TIMEZONE_CACHE_TTL_SECONDS, max_entries=4096, clock=clock)
        self.rooms = TTLCache(ttl=ROOMS_CACHE_TTL_SECONDS, max_entries=16, clock=clock)

    def clear(self) -> None:
        self.timezones.invalidate()
        self.rooms.invalidate()
