"""Bedrock — MarineTraffic API client.

`MarineTrafficAdapter` performs exactly one upstream HTTP call per method and
maps every failure to a typed `UpstreamFailure`. It never retries and never
caches. `MarineTrafficService` layers the cache-aside reads on top of it.
"""

import logging
from typing import Any, Optional

import httpx

from backend.cache import CacheStore
from backend.exceptions import (
    AuthError,
    InvalidRequest,
    MalformedResponse,
    NetworkError,
    RateLimited,
    UpstreamFailure,
    UpstreamStatusError,
)
from backend.models import ALL_VESSELS, BoundingBox

logger = logging.getLogger("bedrock.marinetraffic")

DEFAULT_BASE_URL = "https://services.marinetraffic.com/api"

ENDPOINTS = {
    "vessel_positions": "/exportvessels",
    "vessel_details": "/vesselmasterdata",
    "port_info": "/portinfo",
    "vessel_track": "/shiptrack",
    "vessel_search": "/vesselsearch",
}

# Query parameter used for each identifier type
IDENTIFIER_PARAMS = {
    "imo": "imo",
    "mmsi": "mmsi",
    "name": "vesselname",
}


def _classify_error_body(errors: list) -> UpstreamFailure:
    """Map a MarineTraffic `{"errors": [...]}` body to a typed failure."""
    details = []
    for err in errors:
        if isinstance(err, dict):
            details.append(str(err.get("detail") or err.get("code") or err))
        else:
            details.append(str(err))
    text = "; ".join(details) or "Upstream reported an error"
    upper = text.upper()
    if "KEY" in upper or "UNAUTHORI" in upper or "FORBIDDEN" in upper:
        return AuthError(text)
    if "LIMIT" in upper or "TOO MANY" in upper or "CREDITS" in upper:
        return RateLimited(text)
    return MalformedResponse(text)


class MarineTrafficAdapter:
    """Thin async client for the MarineTraffic REST API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            logger.warning("MarineTraffic API key not configured — upstream calls will be rejected")
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def request(self, endpoint: str, params: dict) -> Any:
        """Issue one GET against `endpoint` and return the decoded JSON body."""
        url = f"{self._base_url}{endpoint}"
        query = {**params, "format": "json", "apikey": self._api_key}

        logger.debug("MarineTraffic request: %s", endpoint)
        try:
            resp = await self.client.get(url, params=query)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out calling {endpoint}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Network error calling {endpoint}: {e}") from e

        if resp.status_code == 429:
            raise RateLimited(
                f"Rate limit exceeded for {endpoint}",
                details={"retryAfter": resp.headers.get("Retry-After")},
            )
        if resp.status_code in (401, 403):
            raise AuthError(f"MarineTraffic rejected credentials ({resp.status_code})")
        if not resp.is_success:
            raise UpstreamStatusError(
                f"MarineTraffic returned {resp.status_code} for {endpoint}",
                upstream_status=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse(f"Invalid JSON from {endpoint}") from e

        if isinstance(data, dict) and data.get("errors"):
            raise _classify_error_body(data["errors"])

        logger.debug("MarineTraffic response received for %s", endpoint)
        return data

    async def fetch(self, bounds: BoundingBox, vessel_type: Optional[str] = None) -> list:
        """Vessels inside `bounds`, optionally restricted to one ship type."""
        params = {
            "MINLAT": bounds.min_lat,
            "MAXLAT": bounds.max_lat,
            "MINLON": bounds.min_lon,
            "MAXLON": bounds.max_lon,
        }
        if vessel_type:
            params["shiptype"] = vessel_type

        data = await self.request(ENDPOINTS["vessel_positions"], params)
        if not isinstance(data, list):
            raise MalformedResponse("Expected a vessel list from exportvessels")
        return data

    async def fetch_vessel_details(self, identifier: str, identifier_type: str = "imo") -> Any:
        param = IDENTIFIER_PARAMS.get(identifier_type.lower())
        if param is None:
            raise InvalidRequest(f"Invalid identifier type: {identifier_type}")
        return await self.request(ENDPOINTS["vessel_details"], {param: identifier})

    async def search_vessels(self, query: str, search_type: str = "name") -> Any:
        param = IDENTIFIER_PARAMS.get(search_type.lower())
        if param is None:
            raise InvalidRequest(f"Invalid search type: {search_type}")
        return await self.request(ENDPOINTS["vessel_search"], {param: query})

    async def fetch_port_info(self, port_id: Optional[str] = None, port_name: Optional[str] = None) -> Any:
        if port_id:
            params = {"portid": port_id}
        elif port_name:
            params = {"portname": port_name}
        else:
            raise InvalidRequest("Either portId or portName must be provided")
        return await self.request(ENDPOINTS["port_info"], params)

    async def fetch_vessel_track(self, vessel_id: str, time_span: int = 24) -> Any:
        return await self.request(
            ENDPOINTS["vessel_track"],
            {"mmsi": vessel_id, "timespan": time_span},
        )

    async def validate_api_key(self) -> bool:
        """Probe the positions endpoint with a tiny box."""
        try:
            await self.request(
                ENDPOINTS["vessel_positions"],
                {"MINLAT": 0, "MAXLAT": 1, "MINLON": 0, "MAXLON": 1},
            )
        except UpstreamFailure as e:
            logger.error("MarineTraffic API key validation failed: %s", e.message)
            return False
        logger.info("MarineTraffic API key is valid")
        return True

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MarineTrafficService:
    """Cache-aside reads over the MarineTraffic adapter."""

    def __init__(
        self,
        adapter: MarineTrafficAdapter,
        cache: CacheStore,
        positions_ttl: int = 300,
        details_ttl: int = 3600,
        port_info_ttl: int = 1800,
        track_ttl: int = 3600,
        search_ttl: int = 1800,
    ):
        self.adapter = adapter
        self.cache = cache
        self._positions_ttl = positions_ttl
        self._details_ttl = details_ttl
        self._port_info_ttl = port_info_ttl
        self._track_ttl = track_ttl
        self._search_ttl = search_ttl

    async def get_vessels_in_viewport(self, bounds: BoundingBox, vessel_type: Optional[str] = None) -> list:
        key = f"vessels:viewport:{bounds.canonical()}:{vessel_type or ALL_VESSELS}"
        return await self.cache.get_or_fetch(
            key, self._positions_ttl, lambda: self.adapter.fetch(bounds, vessel_type)
        )

    async def get_vessel_details(self, identifier: str, identifier_type: str = "imo") -> Any:
        key = f"vessel:{identifier_type.lower()}:{identifier}"
        return await self.cache.get_or_fetch(
            key, self._details_ttl,
            lambda: self.adapter.fetch_vessel_details(identifier, identifier_type),
        )

    async def search_vessels(self, query: str, search_type: str = "name") -> Any:
        key = f"vessel:search:{search_type.lower()}:{query}"
        return await self.cache.get_or_fetch(
            key, self._search_ttl, lambda: self.adapter.search_vessels(query, search_type)
        )

    async def get_port_info(self, port_id: Optional[str] = None, port_name: Optional[str] = None) -> Any:
        key = f"port:id:{port_id}" if port_id else f"port:name:{port_name}"
        return await self.cache.get_or_fetch(
            key, self._port_info_ttl, lambda: self.adapter.fetch_port_info(port_id, port_name)
        )

    async def get_vessel_track(self, vessel_id: str, time_span: int = 24) -> Any:
        key = f"vessel:track:{vessel_id}:{time_span}"
        return await self.cache.get_or_fetch(
            key, self._track_ttl, lambda: self.adapter.fetch_vessel_track(vessel_id, time_span)
        )

    async def validate_api_key(self) -> bool:
        return await self.adapter.validate_api_key()

    async def close(self):
        await self.adapter.close()
