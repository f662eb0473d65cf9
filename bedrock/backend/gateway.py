"""Bedrock — Vessel WebSocket gateway.

Inbound frames are JSON objects `{"action": ..., "data": {...}}`. Room
subscriptions go to the RoomRegistry; one-off queries are answered to the
requesting connection only.
"""

import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from backend.exceptions import BedrockError, InvalidSubscription
from backend.models import (
    ERROR,
    PORT_INFO,
    SUBSCRIPTION_ERROR,
    VESSEL_DETAILS,
    VESSEL_SEARCH_RESULTS,
    VESSEL_TRACK,
    VESSEL_UPDATE,
    ClientMessage,
    PortLookup,
    TrackQuery,
    VesselQuery,
    VesselSearch,
    failure_payload,
    parse_request,
    parse_subscription,
    success_payload,
)
from backend.rooms import RoomRegistry
from backend.websocket_manager import ConnectionManager
from collectors.marine_traffic import MarineTrafficService

logger = logging.getLogger("bedrock.gateway")

Handler = Callable[[str, Any], Awaitable[None]]


class VesselGateway:
    """Dispatches client messages to the registry and the vessel service."""

    def __init__(self, manager: ConnectionManager, registry: RoomRegistry, vessels: MarineTrafficService):
        self.manager = manager
        self.registry = registry
        self.vessels = vessels
        self._handlers: dict[str, Handler] = {
            "subscribe": self.on_subscribe,
            "join-area": self.on_subscribe,
            "unsubscribe": self.on_unsubscribe,
            "leave-area": self.on_unsubscribe,
            "query-vessel": self.on_query_vessel,
            "get-vessel-details": self.on_query_vessel,
            "search-vessels": self.on_search_vessels,
            "get-port-info": self.on_port_info,
            "get-vessel-track": self.on_vessel_track,
        }

    async def serve(self, websocket: WebSocket):
        """Own one client session from accept to cleanup."""
        connection_id = await self.manager.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.dispatch(connection_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(connection_id)

    async def disconnect(self, connection_id: str):
        await self.registry.remove_connection_everywhere(connection_id)
        self.manager.disconnect(connection_id)

    async def send(self, connection_id: str, action: str, payload: dict) -> bool:
        return await self.manager.send_to(connection_id, {"action": action, **payload})

    async def dispatch(self, connection_id: str, raw: str):
        try:
            message = ClientMessage.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            await self.send(connection_id, ERROR, failure_payload("MalformedMessage"))
            return

        handler = self._handlers.get(message.action)
        if handler is None:
            logger.debug("Unknown action from %s: %s", connection_id, message.action)
            await self.send(connection_id, ERROR, failure_payload("UnknownAction"))
            return

        await handler(connection_id, message.data)

    # ── Room subscriptions ─────────────────────────────────────────

    async def on_subscribe(self, connection_id: str, data: Any):
        try:
            bounds, vessel_type = parse_subscription(data)
        except InvalidSubscription as e:
            await self.send(connection_id, SUBSCRIPTION_ERROR, {**failure_payload(e.kind), "details": e.details})
            return

        room = await self.registry.subscribe(connection_id, bounds, vessel_type)

        # Initial data for the new subscriber; served from cache when warm
        payload = await self.registry.fetch_payload(room.bounds, room.vessel_type)
        await self.send(connection_id, VESSEL_UPDATE, {"room": room.key, **payload})

    async def on_unsubscribe(self, connection_id: str, data: Any):
        try:
            bounds, vessel_type = parse_subscription(data)
        except InvalidSubscription as e:
            await self.send(connection_id, SUBSCRIPTION_ERROR, {**failure_payload(e.kind), "details": e.details})
            return
        await self.registry.unsubscribe(connection_id, bounds, vessel_type)

    # ── Request / reply ────────────────────────────────────────────

    async def _reply(self, connection_id: str, action: str, call: Callable[[], Awaitable[Any]]):
        try:
            result = await call()
        except BedrockError as e:
            logger.warning("%s failed for %s (%s): %s", action, connection_id, e.kind, e.message)
            await self.send(connection_id, action, failure_payload(e.kind))
            return
        except Exception:
            logger.exception("%s failed for %s", action, connection_id)
            await self.send(connection_id, action, failure_payload("InternalError"))
            return
        await self.send(connection_id, action, success_payload(result))

    async def on_query_vessel(self, connection_id: str, data: Any):
        async def call():
            query = parse_request(VesselQuery, data)
            return await self.vessels.get_vessel_details(query.identifier, query.identifier_type)

        await self._reply(connection_id, VESSEL_DETAILS, call)

    async def on_search_vessels(self, connection_id: str, data: Any):
        async def call():
            search = parse_request(VesselSearch, data)
            return await self.vessels.search_vessels(search.query, search.search_type)

        await self._reply(connection_id, VESSEL_SEARCH_RESULTS, call)

    async def on_port_info(self, connection_id: str, data: Any):
        async def call():
            lookup = parse_request(PortLookup, data)
            return await self.vessels.get_port_info(lookup.port_id, lookup.port_name)

        await self._reply(connection_id, PORT_INFO, call)

    async def on_vessel_track(self, connection_id: str, data: Any):
        async def call():
            track = parse_request(TrackQuery, data)
            return await self.vessels.get_vessel_track(track.vessel_id, track.time_span)

        await self._reply(connection_id, VESSEL_TRACK, call)
