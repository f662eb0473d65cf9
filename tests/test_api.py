from fastapi.testclient import TestClient

from backend.exceptions import RateLimited

VIEWPORT = {"minLat": "50", "maxLat": "52", "minLon": "3", "maxLon": "5"}


def test_root(client):
    body = client.get("/").json()
    assert body["status"] == "operational"
    assert body["rooms"] == 0


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["services"]["cache"] == "memory"
    assert body["services"]["redis"] is False
    assert body["services"]["mongodb"] is True
    assert body["services"]["marineTraffic"] is None
    assert body["activeRooms"] == {}


def test_health_validate_probes_upstream(client, vessel_service):
    assert client.get("/api/health?validate=true").json()["services"]["marineTraffic"] is True
    vessel_service.error = RateLimited("nope")
    assert client.get("/api/health?validate=true").json()["services"]["marineTraffic"] is False


def test_vessels_in_viewport(client, vessel_service):
    resp = client.get("/api/vessels", params={**VIEWPORT, "vesselType": "7"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["vesselType"] == "7"
    assert body["bounds"] == {"minLat": 50.0, "maxLat": 52.0, "minLon": 3.0, "maxLon": 5.0}
    assert body["data"][0]["SHIPNAME"] == "NORDIC STAR"
    assert vessel_service.calls[-1][2] == "7"


def test_vessels_all_filter_is_unfiltered(client, vessel_service):
    body = client.get("/api/vessels", params={**VIEWPORT, "vesselType": "all"}).json()
    assert body["vesselType"] == "all"
    assert vessel_service.calls[-1][2] is None


def test_vessels_requires_all_bounds(client):
    resp = client.get("/api/vessels", params={"minLat": "50"})
    assert resp.status_code == 400
    assert resp.json()["type"] == "InvalidRequest"


def test_vessels_rejects_invalid_bounds(client):
    resp = client.get("/api/vessels", params={**VIEWPORT, "minLat": "95"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["type"] == "InvalidSubscription"
    assert body["code"] == "invalid_subscription"


def test_upstream_failure_maps_to_status(client, vessel_service):
    vessel_service.error = RateLimited("too many requests")
    resp = client.get("/api/vessels", params=VIEWPORT)
    assert resp.status_code == 429
    assert resp.json() == {"error": "too many requests", "code": "rate_limited", "type": "RateLimited"}


def test_vessel_search(client):
    assert client.get("/api/vessels/search").status_code == 400
    body = client.get("/api/vessels/search", params={"query": "nordic", "searchType": "name"}).json()
    assert body["data"] == [{"SHIPNAME": "NORDIC"}]
    assert body["searchType"] == "name"


def test_vessel_details_and_track(client, vessel_service):
    body = client.get("/api/vessels/244660000", params={"identifierType": "mmsi"}).json()
    assert body["data"] == {"IMO": "244660000", "type": "mmsi"}

    resp = client.get("/api/vessels/244660000", params={"identifierType": "callsign"})
    assert resp.status_code == 400

    body = client.get("/api/vessels/244660000/track", params={"timeSpan": 6}).json()
    assert body["timeSpan"] == 6
    assert ("track", "244660000", 6) in vessel_service.calls


def test_ports_endpoints(client):
    body = client.get("/api/ports/viewport", params=VIEWPORT).json()
    assert body["count"] == 2

    body = client.get("/api/ports/country/nl").json()
    assert [p["name"] for p in body["data"]] == ["Rotterdam"]

    body = client.get("/api/ports/search", params={"q": "sing"}).json()
    assert [p["name"] for p in body["data"]] == ["Singapore"]
    assert client.get("/api/ports/search").status_code == 400

    body = client.get("/api/ports/oil-facilities").json()
    assert body["count"] == 1

    body = client.get("/api/ports/64b000000000000000000002").json()
    assert body["data"]["name"] == "Singapore"
    assert client.get("/api/ports/64b0000000000000000000ff").status_code == 404


def test_ports_unavailable(test_settings, vessel_service):
    from conftest import FakeCollector, FakePortRepository
    from backend.main import create_app

    app = create_app(
        test_settings,
        vessels=vessel_service,
        ports=FakePortRepository(available=False),
        oil=FakeCollector("oil"),
        coal=FakeCollector("coal"),
        news=FakeCollector("news"),
    )
    with TestClient(app) as c:
        resp = c.get("/api/ports/search", params={"q": "x"})
        assert resp.status_code == 503
        assert resp.json()["type"] == "NetworkError"
        assert c.get("/api/health").json()["services"]["mongodb"] is False


def test_commodity_prices(client):
    body = client.get("/api/oil-prices").json()
    assert body["current"]["brent"]["price"] == "82.10"
    assert body["previous"]["brent"]["price"] == "81.00"

    resp = client.get("/api/coal-prices")
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to fetch coal price"


def test_news(client):
    assert client.get("/api/news", params={"feed": "energy"}).json() == {"items": [{"title": "Oil rallies"}]}
    assert client.get("/api/news").json() == {
        "feeds": {"energy": [{"title": "Oil rallies"}], "bloomberg": []}
    }
    resp = client.get("/api/news", params={"feed": "gossip"})
    assert resp.status_code == 400
    assert resp.json()["details"] == {"available": ["bloomberg", "energy"]}


def test_mapbox_token(client, test_settings, vessel_service):
    assert client.get("/api/mapbox-token").json() == {"token": "pk.test-token"}


def test_mapbox_token_missing(vessel_service, port_repository):
    from backend.config import Settings
    from conftest import FakeCollector
    from backend.main import create_app

    settings = Settings(commodity_background_refresh=False, mapbox_token=None)
    app = create_app(
        settings,
        vessels=vessel_service,
        ports=port_repository,
        oil=FakeCollector("oil"),
        coal=FakeCollector("coal"),
        news=FakeCollector("news"),
    )
    with TestClient(app) as c:
        assert c.get("/api/mapbox-token").status_code == 500


def test_rooms_show_up_in_health(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"action": "subscribe", "data": {"bounds": {k: float(v) for k, v in VIEWPORT.items()}}})
        key = ws.receive_json()["room"]
        rooms = client.get("/api/health").json()["activeRooms"]
        assert rooms[key]["clientCount"] == 1
        assert rooms[key]["vesselType"] == "all"
