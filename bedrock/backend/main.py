"""
Bedrock Terminal — Main FastAPI Application
Maritime & commodity market data backend
"""

import asyncio
import logging
import sys
import os

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend.cache import CacheStore
from backend.config import Settings, settings as default_settings
from backend.exceptions import InvalidRequest, register_exception_handlers
from backend.gateway import VesselGateway
from backend.models import (
    ALL_VESSELS,
    BoundingBox,
    TrackQuery,
    VesselQuery,
    VesselSearch,
    normalize_vessel_type,
    parse_bounds,
    parse_request,
)
from backend.ports import PortRepository
from backend.rooms import RoomRegistry
from backend.websocket_manager import ConnectionManager

from collectors.commodity_collector import COAL_BENCHMARKS, OIL_BENCHMARKS, CommodityCollector
from collectors.marine_traffic import MarineTrafficAdapter, MarineTrafficService
from collectors.news_collector import NewsCollector

# ─── Logging ───────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(name)-20s │ %(levelname)-7s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("bedrock.main")


async def run_collector(collector: CommodityCollector, ws_manager: ConnectionManager):
    """Keep a commodity snapshot warm and push each refresh to every client."""
    async for quotes in collector.start():
        if not quotes:
            continue
        await ws_manager.broadcast({
            "action": "commodity-update",
            "commodity": collector.name,
            **collector.snapshot(),
        })


def _bounds_from_query(min_lat, max_lat, min_lon, max_lon) -> BoundingBox:
    if None in (min_lat, max_lat, min_lon, max_lon):
        raise InvalidRequest("Missing required parameters: minLat, maxLat, minLon, maxLon")
    return parse_bounds({"minLat": min_lat, "maxLat": max_lat, "minLon": min_lon, "maxLon": max_lon})


def create_app(
    settings: Optional[Settings] = None,
    *,
    cache: Optional[CacheStore] = None,
    vessels: Optional[MarineTrafficService] = None,
    ports: Optional[PortRepository] = None,
    oil: Optional[CommodityCollector] = None,
    coal: Optional[CommodityCollector] = None,
    news: Optional[NewsCollector] = None,
) -> FastAPI:
    """Build the application. Collaborators default to the configured services."""
    settings = settings or default_settings

    if cache is None:
        cache = CacheStore(
            redis_url=settings.redis_url,
            use_redis=settings.use_redis,
            key_prefix=settings.cache_key_prefix,
        )
    if vessels is None:
        vessels = MarineTrafficService(
            MarineTrafficAdapter(
                api_key=settings.marinetraffic_api_key,
                base_url=settings.marinetraffic_base_url,
                timeout=settings.upstream_timeout,
            ),
            cache,
            positions_ttl=settings.vessel_positions_ttl,
            details_ttl=settings.vessel_details_ttl,
            port_info_ttl=settings.port_info_ttl,
            track_ttl=settings.vessel_track_ttl,
            search_ttl=settings.vessel_search_ttl,
        )
    if ports is None:
        ports = PortRepository(
            uri=settings.mongodb_uri,
            database=settings.mongodb_database,
            collection=settings.mongodb_ports_collection,
        )
    if oil is None:
        oil = CommodityCollector(
            "oil", OIL_BENCHMARKS,
            api_key=settings.oil_price_api_key,
            base_url=settings.oil_price_base_url,
            ttl=settings.commodity_ttl,
        )
    if coal is None:
        coal = CommodityCollector(
            "coal", COAL_BENCHMARKS,
            api_key=settings.oil_price_api_key,
            base_url=settings.oil_price_base_url,
            ttl=settings.commodity_ttl,
        )
    if news is None:
        news = NewsCollector(settings.news_feeds)

    ws_manager = ConnectionManager()
    registry = RoomRegistry(
        fetch_vessels=vessels.get_vessels_in_viewport,
        deliver=ws_manager.send_to,
        refresh_interval=settings.vessel_refresh_interval,
    )
    gateway = VesselGateway(ws_manager, registry, vessels)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect stores on startup; stop timers and clients on shutdown."""
        logger.info("═══════════════════════════════════════════════")
        logger.info("  BEDROCK TERMINAL — Maritime & Markets Backend ")
        logger.info("  Version %s", settings.app_version)
        logger.info("═══════════════════════════════════════════════")
        logger.info("MarineTraffic key: %s", "SET" if settings.marinetraffic_api_key else "NOT SET")
        logger.info("Mapbox token: %s", "SET" if settings.mapbox_token else "NOT SET")

        await cache.connect()
        await ports.connect()

        tasks = []
        if settings.commodity_background_refresh:
            for collector in (oil, coal):
                tasks.append(asyncio.create_task(run_collector(collector, ws_manager)))
                logger.info("Started collector: %s", collector.name)

        yield

        # Shutdown
        logger.info("Shutting down Bedrock...")
        for task in tasks:
            task.cancel()
        await registry.close()
        for collector in (oil, coal, news):
            await collector.stop()
        await vessels.close()
        await cache.close()
        ports.close()

    app = FastAPI(
        title=settings.app_name,
        description="Maritime & commodity market data backend",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.cache = cache
    app.state.vessels = vessels
    app.state.ports = ports
    app.state.registry = registry
    app.state.ws_manager = ws_manager
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    # ─── REST Endpoints ───────────────────────────────
    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "status": "operational",
            "ws_clients": ws_manager.connection_count,
            "rooms": registry.room_count,
        }

    @app.get("/api/health")
    async def health(validate: bool = False):
        """Service health. `validate=true` also probes the MarineTraffic key."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "redis": cache.backend == "redis" and await cache.ping(),
                "cache": cache.backend,
                "mongodb": ports.available,
                "marineTraffic": await vessels.validate_api_key() if validate else None,
                "websocket": ws_manager.connection_count,
            },
            "activeRooms": registry.active_rooms_info(),
        }

    # ─── Vessels ──────────────────────────────────────
    @app.get("/api/vessels")
    async def get_vessels(
        min_lat: Optional[str] = Query(None, alias="minLat"),
        max_lat: Optional[str] = Query(None, alias="maxLat"),
        min_lon: Optional[str] = Query(None, alias="minLon"),
        max_lon: Optional[str] = Query(None, alias="maxLon"),
        vessel_type: Optional[str] = Query(None, alias="vesselType"),
    ):
        """Vessels within a bounding box."""
        bounds = _bounds_from_query(min_lat, max_lat, min_lon, max_lon)
        vessel_type = normalize_vessel_type(vessel_type)
        data = await vessels.get_vessels_in_viewport(bounds, vessel_type)
        return {
            "success": True,
            "data": data,
            "bounds": bounds.to_dict(),
            "vesselType": vessel_type or ALL_VESSELS,
        }

    @app.get("/api/vessels/search")
    async def search_vessels(
        query: Optional[str] = None,
        search_type: str = Query("name", alias="searchType"),
    ):
        if not query:
            raise InvalidRequest("Missing required parameter: query")
        search = parse_request(VesselSearch, {"query": query, "searchType": search_type})
        data = await vessels.search_vessels(search.query, search.search_type)
        return {"success": True, "data": data, "query": search.query, "searchType": search.search_type}

    @app.get("/api/vessels/{vessel_id}")
    async def get_vessel_details(vessel_id: str, identifier_type: str = Query("imo", alias="identifierType")):
        q = parse_request(VesselQuery, {"identifier": vessel_id, "identifierType": identifier_type})
        data = await vessels.get_vessel_details(q.identifier, q.identifier_type)
        return {"success": True, "data": data}

    @app.get("/api/vessels/{vessel_id}/track")
    async def get_vessel_track(vessel_id: str, time_span: int = Query(24, alias="timeSpan")):
        track = parse_request(TrackQuery, {"vesselId": vessel_id, "timeSpan": time_span})
        data = await vessels.get_vessel_track(track.vessel_id, track.time_span)
        return {"success": True, "data": data, "vesselId": track.vessel_id, "timeSpan": track.time_span}

    # ─── Ports ────────────────────────────────────────
    @app.get("/api/ports/viewport")
    async def ports_in_viewport(
        min_lat: Optional[str] = Query(None, alias="minLat"),
        max_lat: Optional[str] = Query(None, alias="maxLat"),
        min_lon: Optional[str] = Query(None, alias="minLon"),
        max_lon: Optional[str] = Query(None, alias="maxLon"),
        limit: int = Query(1000, ge=1),
    ):
        bounds = _bounds_from_query(min_lat, max_lat, min_lon, max_lon)
        data = await ports.in_bounds(bounds, limit)
        return {"success": True, "count": len(data), "data": data}

    @app.get("/api/ports/country/{country_code}")
    async def ports_by_country(country_code: str, limit: int = Query(1000, ge=1)):
        data = await ports.by_country(country_code, limit)
        return {"success": True, "count": len(data), "country": country_code, "data": data}

    @app.get("/api/ports/search")
    async def search_ports(q: Optional[str] = None, limit: int = Query(50, ge=1)):
        if not q:
            raise InvalidRequest("Missing search query parameter: q")
        data = await ports.search(q, limit)
        return {"success": True, "count": len(data), "query": q, "data": data}

    @app.get("/api/ports/oil-facilities")
    async def oil_facility_ports(limit: int = Query(1000, ge=1)):
        data = await ports.oil_facilities(limit)
        return {"success": True, "count": len(data), "data": data}

    @app.get("/api/ports/{port_id}")
    async def get_port(port_id: str):
        port = await ports.get(port_id)
        if port is None:
            raise HTTPException(status_code=404, detail="Port not found")
        return {"success": True, "data": port}

    # ─── Commodities & News ───────────────────────────
    @app.get("/api/oil-prices")
    async def oil_prices():
        snapshot = await oil.get_current()
        if snapshot is None:
            raise HTTPException(status_code=500, detail="Failed to fetch oil prices")
        return snapshot

    @app.get("/api/coal-prices")
    async def coal_prices():
        snapshot = await coal.get_current()
        if snapshot is None:
            raise HTTPException(status_code=500, detail="Failed to fetch coal price")
        return snapshot

    @app.get("/api/news")
    async def get_news(feed: Optional[str] = None):
        """One feed's items, or every configured feed when `feed` is omitted."""
        if feed is None:
            return {"feeds": await news.collect()}
        return {"items": await news.fetch_feed(feed)}

    @app.get("/api/mapbox-token")
    async def mapbox_token():
        if not settings.mapbox_token:
            logger.error("MAPBOX_TOKEN not set in environment variables")
            raise HTTPException(status_code=500, detail="MAPBOX_TOKEN not set in environment variables")
        return {"token": settings.mapbox_token}

    # ─── WebSocket Endpoint ───────────────────────────
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Vessel room subscriptions and vessel queries."""
        await gateway.serve(websocket)

    return app


app = create_app()


# ─── Run ───────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=True,
    )
