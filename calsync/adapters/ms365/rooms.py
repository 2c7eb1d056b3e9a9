"""
Room directory with a TTL cache and stale-on-error fallback.

The raw Graph snapshot is cached (not the normalized rooms) so every field
stays available for later filtering. On a failed refresh the last snapshot
is served, flagged stale.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from ...models import Room, RoomListing
from ...services.cache import TTLCache
from ._auth import GraphClient
from .errors import CalendarError, report_error
from .normalizers import normalize_rooms


logger = logging.getLogger(__name__)

ROOMS_ENDPOINT = "/places/microsoft.graph.room"
ROOMS_CACHE_KEY = "rooms"

FLOOR_NAME_TEMPLATES = (
    "floor {}", "{} floor", "fl {}", "f{}", "level {}",
    "{}th floor", "{}nd floor", "{}rd floor", "{}st floor",
)


def _matches_building(room: Room, building: str) -> bool:
    needle = building.lower()
    if room.building and needle in room.building.lower():
        return True
    haystacks = (room.display_name, room.address, room.email_address)
    return any(needle in value.lower() for value in haystacks if value)


def _matches_floor(room: Room, floor: Union[int, str]) -> bool:
    needle = str(floor).lower()
    if room.floor is not None:
        return str(room.floor).lower() == needle
    name = room.display_name.lower()
    return any(template.format(needle) in name for template in FLOOR_NAME_TEMPLATES)


def filter_rooms(
    rooms: List[Room],
    building: Optional[str] = None,
    floor: Optional[Union[int, str]] = None,
    min_capacity: Optional[int] = None,
    has_audio: Optional[bool] = None,
    has_video: Optional[bool] = None,
    has_display: Optional[bool] = None
) -> List[Room]:
    """
    Apply every given filter (AND). Rooms without a capacity never satisfy
    min_capacity; equipment flags only filter when True.
    """
    result = list(rooms)
    if building:
        result = [r for r in result if _matches_building(r, building)]
    if floor is not None and floor != "":
        result = [r for r in result if _matches_floor(r, floor)]
    if min_capacity is not None:
        result = [r for r in result if r.capacity is not None and r.capacity >= min_capacity]
    if has_audio:
        result = [r for r in result if r.equipment.has_audio]
    if has_video:
        result = [r for r in result if r.equipment.has_video]
    if has_display:
        result = [r for r in result if r.equipment.has_display]
    return result


class RoomDirectory:
    """
    Example:
        directory = RoomDirectory(client, caches.rooms)
        listing = await directory.get_rooms(floor=3, min_capacity=10)
        for room in listing.rooms:
            print(room.display_name, room.capacity)
    """

    def __init__(
        self,
        client: GraphClient,
        cache: TTLCache,
        clock: Callable[[], float] = time.time
    ):
        self.client = client
        self.cache = cache
        self.clock = clock

    async def get_rooms(
        self,
        building: Optional[str] = None,
        floor: Optional[Union[int, str]] = None,
        min_capacity: Optional[int] = None,
        has_audio: Optional[bool] = None,
        has_video: Optional[bool] = None,
        has_display: Optional[bool] = None,
        bypass_cache: bool = False,
        ttl: Optional[float] = None,
        top: Optional[int] = None
    ) -> RoomListing:
        """
        List rooms matching the filters.

        Args:
            building: Substring of building, name, address or email
            floor: Floor number or name
            min_capacity: Minimum seats
            has_audio, has_video, has_display: Required equipment
            bypass_cache: Always fetch from Graph
            ttl: Cache TTL in seconds for a fresh snapshot
            top: Page size passed to Graph

        Returns:
            RoomListing; paging_token is only set on live fetches

        Raises:
            CalendarError: Fetch failed and nothing was cached
        """
        filters = {
            "building": building,
            "floor": floor,
            "min_capacity": min_capacity,
            "has_audio": has_audio,
            "has_video": has_video,
            "has_display": has_display
        }

        # A paged fetch is a partial directory and never touches the cache
        paged = bool(top)
        if not bypass_cache and not paged:
            cached = self.cache.get(ROOMS_CACHE_KEY)
            if cached is not None:
                logger.info("Using cached room list (%d rooms)", len(cached))
                return RoomListing(
                    rooms=filter_rooms(normalize_rooms(cached), **filters),
                    from_cache=True
                )

        params = {"$top": top} if top else None
        try:
            response = await self.client.get(ROOMS_ENDPOINT, params=params)
        except CalendarError as e:
            stale = self.cache.get_entry_stale(ROOMS_CACHE_KEY)
            if stale is not None:
                logger.warning("Room fetch failed (%s), serving stale cache", e.kind.value)
                return RoomListing(
                    rooms=filter_rooms(normalize_rooms(stale.value), **filters),
                    from_cache=True,
                    stale=True
                )
            error = CalendarError(
                f"Failed to get rooms: {e.message}",
                kind=e.kind,
                context={
                    "endpoint": ROOMS_ENDPOINT,
                    "filters": {k: v for k, v in filters.items() if v is not None},
                    "timestamp": datetime.fromtimestamp(self.clock(), timezone.utc).isoformat()
                },
                cause=e,
                status_code=e.status_code,
                attempts=1
            )
            report_error(error, "get_rooms")
            raise error

        raw_rooms = response.get("value") or []
        if not paged:
            self.cache.set(ROOMS_CACHE_KEY, raw_rooms, ttl=ttl)
        logger.info("Fetched %d rooms from Graph", len(raw_rooms))

        return RoomListing(
            rooms=filter_rooms(normalize_rooms(raw_rooms), **filters),
            paging_token=response.get("@odata.nextLink")
        )
