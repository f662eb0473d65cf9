from __future__ import annotations

import os
import socket
from typing import Any, Optional

import pytest

from backend.config import Settings
from backend.exceptions import NetworkError
from backend.models import BoundingBox


class NetworkBlockedError(RuntimeError):
    pass


def _blocked(*_args: Any, **_kwargs: Any) -> Any:
    raise NetworkBlockedError(
        "Network access is disabled during tests. "
        "Mark the test with @pytest.mark.network or set ALLOW_NETWORK=1."
    )


@pytest.fixture(autouse=True)
def _disable_network(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Prevent accidental outbound network calls in unit tests."""

    if os.getenv("ALLOW_NETWORK") == "1":
        return

    if request.node.get_closest_marker("network"):
        return

    monkeypatch.setattr(socket, "create_connection", _blocked)
    monkeypatch.setattr(socket, "getaddrinfo", _blocked)


class FakeVesselService:
    """Stands in for MarineTrafficService; records calls and returns canned data."""

    def __init__(self, vessels: Optional[list] = None):
        self.vessels = vessels if vessels is not None else [{"MMSI": "123456789", "SHIPNAME": "NORDIC STAR"}]
        self.error: Optional[Exception] = None
        self.calls: list[tuple] = []

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    async def get_vessels_in_viewport(self, bounds: BoundingBox, vessel_type: Optional[str] = None):
        self.calls.append(("viewport", bounds, vessel_type))
        self._maybe_fail()
        return self.vessels

    async def get_vessel_details(self, identifier: str, identifier_type: str = "imo"):
        self.calls.append(("details", identifier, identifier_type))
        self._maybe_fail()
        return {"IMO": identifier, "type": identifier_type}

    async def search_vessels(self, query: str, search_type: str = "name"):
        self.calls.append(("search", query, search_type))
        self._maybe_fail()
        return [{"SHIPNAME": query.upper()}]

    async def get_port_info(self, port_id: Optional[str] = None, port_name: Optional[str] = None):
        self.calls.append(("port", port_id, port_name))
        self._maybe_fail()
        return {"PORT_ID": port_id, "PORT_NAME": port_name}

    async def get_vessel_track(self, vessel_id: str, time_span: int = 24):
        self.calls.append(("track", vessel_id, time_span))
        self._maybe_fail()
        return [{"LAT": 1.0, "LON": 2.0}]

    async def validate_api_key(self) -> bool:
        return self.error is None

    async def close(self):
        pass


class FakePortRepository:
    def __init__(self, ports: Optional[list] = None, available: bool = True):
        self.ports = ports if ports is not None else [
            {"_id": "64b000000000000000000001", "name": "Rotterdam", "country": "NL", "fuelOil": "Y"},
            {"_id": "64b000000000000000000002", "name": "Singapore", "country": "SG"},
        ]
        self._available = available
        self.calls: list[tuple] = []

    async def connect(self):
        pass

    @property
    def available(self) -> bool:
        return self._available

    def _check(self):
        if not self._available:
            raise NetworkError("Port database unavailable")

    async def in_bounds(self, bounds, limit=1000):
        self._check()
        self.calls.append(("bounds", bounds, limit))
        return self.ports[:limit]

    async def by_country(self, country, limit=1000):
        self._check()
        return [p for p in self.ports if p["country"].lower() == country.lower()][:limit]

    async def search(self, text, limit=50):
        self._check()
        return [p for p in self.ports if text.lower() in p["name"].lower()][:limit]

    async def oil_facilities(self, limit=1000):
        self._check()
        return [p for p in self.ports if p.get("fuelOil") == "Y"][:limit]

    async def get(self, port_id):
        self._check()
        return next((p for p in self.ports if p["_id"] == port_id), None)

    def close(self):
        pass


class FakeCollector:
    """Stands in for the commodity and news collectors."""

    def __init__(self, name: str, snapshot: Optional[dict] = None, feeds: Optional[dict] = None):
        self.name = name
        self._snapshot = snapshot
        self.feeds = feeds or {}
        self.stopped = False

    async def get_current(self):
        return self._snapshot

    async def collect(self):
        return self.feeds

    async def fetch_feed(self, key):
        from backend.exceptions import InvalidRequest

        if key not in self.feeds:
            raise InvalidRequest("Invalid feed parameter", details={"available": sorted(self.feeds)})
        return self.feeds[key]

    async def stop(self):
        self.stopped = True


@pytest.fixture
def bounds() -> BoundingBox:
    return BoundingBox(minLat=50.0, maxLat=52.0, minLon=3.0, maxLon=5.0)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        vessel_refresh_interval=3600,
        commodity_background_refresh=False,
        use_redis=False,
        mapbox_token="pk.test-token",
    )


@pytest.fixture
def vessel_service() -> FakeVesselService:
    return FakeVesselService()


@pytest.fixture
def port_repository() -> FakePortRepository:
    return FakePortRepository()


@pytest.fixture
def app(test_settings, vessel_service, port_repository):
    from backend.main import create_app

    oil = FakeCollector("oil", snapshot={
        "current": {"brent": {"title": "Brent Crude", "price": "82.10"}},
        "previous": {"brent": {"title": "Brent Crude", "price": "81.00"}},
        "lastUpdated": "2026-01-01T00:00:00+00:00",
    })
    coal = FakeCollector("coal", snapshot=None)
    news = FakeCollector("news", feeds={"energy": [{"title": "Oil rallies"}], "bloomberg": []})
    return create_app(
        test_settings,
        vessels=vessel_service,
        ports=port_repository,
        oil=oil,
        coal=coal,
        news=news,
    )


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c
