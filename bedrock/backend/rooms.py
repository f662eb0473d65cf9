"""Bedrock — Vessel subscription rooms.

Clients watching the same viewport with the same vessel type filter share one
room. Each room owns a single upstream refresh timer, so N identical
subscriptions cost one poll per interval instead of N.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from backend.exceptions import BedrockError
from backend.models import (
    ALL_VESSELS,
    VESSEL_UPDATE,
    BoundingBox,
    failure_payload,
    normalize_vessel_type,
    success_payload,
)
from backend.scheduler import RefreshScheduler

logger = logging.getLogger("bedrock.rooms")

FetchVessels = Callable[[BoundingBox, Optional[str]], Awaitable[Any]]
# (connection_id, message) -> delivered?
Deliver = Callable[[str, dict], Awaitable[bool]]


def subscription_key(bounds: BoundingBox, vessel_type: Optional[str] = None) -> str:
    """Derive the room key for a (bounds, filter) pair."""
    tag = normalize_vessel_type(vessel_type) or ALL_VESSELS
    digest = hashlib.sha1(bounds.canonical().encode("utf-8")).hexdigest()[:16]
    return f"{tag}:{digest}"


@dataclass
class Room:
    key: str
    bounds: BoundingBox
    vessel_type: Optional[str]
    members: set[str] = field(default_factory=set)
    # Serialises deliveries so updates leave in fetch completion order
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def info(self) -> dict:
        return {
            "bounds": self.bounds.to_dict(),
            "vesselType": self.vessel_type or ALL_VESSELS,
            "clientCount": len(self.members),
        }


class RoomRegistry:
    """Owns rooms, their membership and their refresh timers.

    Membership changes run under one lock and never await while holding it,
    so room creation and teardown for the same key cannot interleave. A reverse
    index (connection → room keys) keeps both sides of the membership in step.
    """

    def __init__(
        self,
        fetch_vessels: FetchVessels,
        deliver: Deliver,
        refresh_interval: float = 30.0,
    ):
        self._fetch_vessels = fetch_vessels
        self._deliver = deliver
        self._rooms: dict[str, Room] = {}
        self._memberships: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self.scheduler = RefreshScheduler(self.refresh, interval=refresh_interval)

    # ── Lookup ──────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[Room]:
        return self._rooms.get(key)

    def rooms_for(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, ()))

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def active_rooms_info(self) -> dict[str, dict]:
        return {key: room.info() for key, room in self._rooms.items()}

    # ── Membership ──────────────────────────────────────────────────

    async def subscribe(
        self, connection_id: str, bounds: BoundingBox, vessel_type: Optional[str] = None
    ) -> Room:
        vessel_type = normalize_vessel_type(vessel_type)
        key = subscription_key(bounds, vessel_type)
        async with self._lock:
            room = self._rooms.get(key)
            if room is None:
                room = Room(key=key, bounds=bounds, vessel_type=vessel_type)
                self._rooms[key] = room
                logger.info("Created room: %s", key)
            room.members.add(connection_id)
            self._memberships.setdefault(connection_id, set()).add(key)
            # No-op while the timer runs; re-arms one that was torn down
            self.scheduler.start(key)
        logger.info("Client %s joined room: %s (%d members)", connection_id, key, len(room.members))
        return room

    async def unsubscribe(
        self, connection_id: str, bounds: BoundingBox, vessel_type: Optional[str] = None
    ) -> bool:
        key = subscription_key(bounds, vessel_type)
        async with self._lock:
            removed = self._remove_member(key, connection_id)
        if removed:
            logger.info("Client %s left room: %s", connection_id, key)
        return removed

    async def remove_connection_everywhere(self, connection_id: str) -> list[str]:
        async with self._lock:
            keys = sorted(self._memberships.get(connection_id, ()))
            for key in keys:
                self._remove_member(key, connection_id)
            self._memberships.pop(connection_id, None)
        if keys:
            logger.info("Client %s removed from %d room(s)", connection_id, len(keys))
        return keys

    def _remove_member(self, key: str, connection_id: str) -> bool:
        # Caller holds self._lock
        joined = self._memberships.get(connection_id)
        if joined is not None:
            joined.discard(key)
            if not joined:
                del self._memberships[connection_id]

        room = self._rooms.get(key)
        if room is None or connection_id not in room.members:
            return False
        room.members.discard(connection_id)
        if not room.members:
            self.scheduler.stop(key)
            del self._rooms[key]
            logger.info("Deleted empty room: %s", key)
        return True

    # ── Delivery ────────────────────────────────────────────────────

    async def broadcast(self, key: str, action: str, payload: dict) -> int:
        """Send to the members present now. Returns the number of deliveries.

        A member whose delivery fails is dropped from every room it joined.
        """
        room = self._rooms.get(key)
        if room is None:
            return 0
        message = {"action": action, "room": key, **payload}
        delivered = 0
        unreachable = []
        for connection_id in list(room.members):
            if await self._deliver(connection_id, message):
                delivered += 1
            else:
                unreachable.append(connection_id)
        for connection_id in unreachable:
            logger.warning("Dropping unreachable client %s from room: %s", connection_id, key)
            await self.remove_connection_everywhere(connection_id)
        return delivered

    async def fetch_payload(self, bounds: BoundingBox, vessel_type: Optional[str]) -> dict:
        """Fetch vessels for a viewport as a tagged success/failure payload."""
        try:
            vessels = await self._fetch_vessels(bounds, vessel_type)
        except BedrockError as e:
            logger.warning("Vessel fetch failed (%s): %s", e.kind, e.message)
            return failure_payload(e.kind)
        except Exception:
            logger.exception("Unexpected error fetching vessels")
            return failure_payload("InternalError")
        return success_payload(vessels)

    async def refresh(self, key: str) -> int:
        """One scheduler tick: fetch for the room and broadcast the result."""
        room = self._rooms.get(key)
        if room is None:
            return 0
        payload = await self.fetch_payload(room.bounds, room.vessel_type)
        # Taken after the fetch: a slow send holds back later ticks, not fetches
        async with room.send_lock:
            delivered = await self.broadcast(key, VESSEL_UPDATE, payload)
        count = len(payload["data"] or []) if payload["success"] else 0
        logger.info("Sent vessel update to room: %s (%d vessels, %d clients)", key, count, delivered)
        return delivered

    async def close(self):
        await self.scheduler.shutdown()
        async with self._lock:
            self._rooms.clear()
            self._memberships.clear()
