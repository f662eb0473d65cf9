import asyncio

import pytest
import pytest_asyncio

from backend.exceptions import NetworkError, RateLimited
from backend.models import VESSEL_UPDATE, BoundingBox
from backend.rooms import RoomRegistry, subscription_key


class Recorder:
    def __init__(self, gone=()):
        self.messages: list[tuple[str, dict]] = []
        self.gone = set(gone)

    async def deliver(self, connection_id, message):
        if connection_id in self.gone:
            return False
        self.messages.append((connection_id, message))
        return True


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def fetched():
    return []


@pytest_asyncio.fixture
async def registry(recorder, fetched):
    async def fetch(bounds, vessel_type):
        fetched.append((bounds, vessel_type))
        return [{"MMSI": "1"}]

    reg = RoomRegistry(fetch, recorder.deliver, refresh_interval=3600)
    yield reg
    await reg.close()


@pytest.mark.asyncio
async def test_identical_subscriptions_share_one_room(registry, bounds):
    room_a = await registry.subscribe("c1", bounds)
    room_b = await registry.subscribe("c2", BoundingBox(**bounds.to_dict()), "all")

    assert room_a is room_b
    assert registry.room_count == 1
    assert room_a.members == {"c1", "c2"}
    assert registry.scheduler.active_keys == [room_a.key]


@pytest.mark.asyncio
async def test_filter_splits_rooms(registry, bounds):
    await registry.subscribe("c1", bounds)
    await registry.subscribe("c1", bounds, "7")
    assert registry.room_count == 2
    assert registry.rooms_for("c1") == {subscription_key(bounds), subscription_key(bounds, "7")}
    assert len(registry.scheduler.active_keys) == 2


@pytest.mark.asyncio
async def test_resubscribe_is_idempotent(registry, bounds):
    await registry.subscribe("c1", bounds)
    room = await registry.subscribe("c1", bounds)
    assert room.members == {"c1"}
    assert len(registry.scheduler.active_keys) == 1


@pytest.mark.asyncio
async def test_last_unsubscribe_tears_room_down(registry, bounds):
    key = subscription_key(bounds)
    await registry.subscribe("c1", bounds)
    await registry.subscribe("c2", bounds)

    assert await registry.unsubscribe("c1", bounds)
    assert registry.get(key).members == {"c2"}
    assert registry.scheduler.is_running(key)

    assert await registry.unsubscribe("c2", bounds)
    assert registry.get(key) is None
    assert not registry.scheduler.is_running(key)
    assert registry.rooms_for("c2") == set()


@pytest.mark.asyncio
async def test_unsubscribe_non_member_is_noop(registry, bounds):
    await registry.subscribe("c1", bounds)
    assert await registry.unsubscribe("stranger", bounds) is False
    assert await registry.unsubscribe("c1", bounds, "7") is False
    assert registry.room_count == 1


@pytest.mark.asyncio
async def test_remove_connection_everywhere(registry, bounds):
    other = BoundingBox(minLat=0, maxLat=1, minLon=0, maxLon=1)
    await registry.subscribe("c1", bounds)
    await registry.subscribe("c1", other)
    await registry.subscribe("c2", other)

    removed = await registry.remove_connection_everywhere("c1")

    assert sorted(removed) == sorted([subscription_key(bounds), subscription_key(other)])
    assert registry.get(subscription_key(bounds)) is None
    assert registry.get(subscription_key(other)).members == {"c2"}
    assert registry.rooms_for("c1") == set()
    assert await registry.remove_connection_everywhere("c1") == []


@pytest.mark.asyncio
async def test_room_recreated_after_teardown_restarts_timer(registry, bounds):
    key = subscription_key(bounds)
    await registry.subscribe("c1", bounds)
    await registry.unsubscribe("c1", bounds)
    await registry.subscribe("c2", bounds)
    assert registry.scheduler.is_running(key)
    assert registry.get(key).members == {"c2"}


@pytest.mark.asyncio
async def test_refresh_broadcasts_to_every_member(registry, recorder, fetched, bounds):
    room = await registry.subscribe("c1", bounds, "7")
    await registry.subscribe("c2", bounds, "7")

    delivered = await registry.refresh(room.key)

    assert delivered == 2
    assert fetched == [(bounds, "7")]
    assert {cid for cid, _ in recorder.messages} == {"c1", "c2"}
    message = recorder.messages[0][1]
    assert message["action"] == VESSEL_UPDATE
    assert message["room"] == room.key
    assert message["success"] is True
    assert message["data"] == [{"MMSI": "1"}]
    assert "timestamp" in message


@pytest.mark.asyncio
async def test_refresh_of_missing_room_does_nothing(registry, recorder, fetched):
    assert await registry.refresh("all:deadbeef") == 0
    assert fetched == []
    assert recorder.messages == []


@pytest.mark.asyncio
async def test_refresh_failure_is_broadcast_as_tagged_error(recorder, bounds):
    async def fetch(_bounds, _vessel_type):
        raise RateLimited("too many requests")

    registry = RoomRegistry(fetch, recorder.deliver, refresh_interval=3600)
    room = await registry.subscribe("c1", bounds)
    await registry.refresh(room.key)

    _, message = recorder.messages[0]
    assert message["success"] is False
    assert message["error"] == "RateLimited"
    assert "data" not in message
    # The room survives a failed tick
    assert registry.scheduler.is_running(room.key)
    await registry.close()


@pytest.mark.asyncio
async def test_unexpected_fetch_error_is_internal_error(recorder, bounds):
    async def fetch(_bounds, _vessel_type):
        raise KeyError("boom")

    registry = RoomRegistry(fetch, recorder.deliver, refresh_interval=3600)
    payload = await registry.fetch_payload(bounds, None)
    assert payload["success"] is False
    assert payload["error"] == "InternalError"
    await registry.close()


@pytest.mark.asyncio
async def test_broadcast_drops_dead_connections(bounds):
    recorder = Recorder(gone={"c2"})

    async def fetch(_bounds, _vessel_type):
        raise NetworkError("offline")

    registry = RoomRegistry(fetch, recorder.deliver, refresh_interval=3600)
    room = await registry.subscribe("c1", bounds)
    await registry.subscribe("c2", bounds)

    assert await registry.broadcast(room.key, VESSEL_UPDATE, {"success": True}) == 1
    assert [cid for cid, _ in recorder.messages] == ["c1"]
    assert registry.get(room.key).members == {"c1"}
    assert registry.rooms_for("c2") == set()
    await registry.close()


@pytest.mark.asyncio
async def test_active_rooms_info(registry, bounds):
    room = await registry.subscribe("c1", bounds, "7")
    info = registry.active_rooms_info()
    assert info == {
        room.key: {"bounds": bounds.to_dict(), "vesselType": "7", "clientCount": 1},
    }


@pytest.mark.asyncio
async def test_close_stops_everything(registry, bounds):
    await registry.subscribe("c1", bounds)
    await registry.close()
    assert registry.room_count == 0
    assert registry.scheduler.active_keys == []


@pytest.mark.asyncio
async def test_concurrent_subscribes_create_one_room(registry, bounds):
    ids = [f"c{i}" for i in range(20)]
    rooms = await asyncio.gather(*(registry.subscribe(cid, bounds) for cid in ids))

    assert len({id(room) for room in rooms}) == 1
    assert registry.room_count == 1
    assert rooms[0].members == set(ids)
    assert registry.scheduler.active_keys == [rooms[0].key]


@pytest.mark.asyncio
async def test_rate_limited_tick_then_next_tick(recorder, bounds):
    outcomes = [RateLimited("slow down"), [{"MMSI": "9"}]]

    async def fetch(_bounds, _vessel_type):
        outcome = outcomes.pop(0) if outcomes else [{"MMSI": "9"}]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    registry = RoomRegistry(fetch, recorder.deliver, refresh_interval=0.2)
    await registry.subscribe("c1", bounds)
    await asyncio.sleep(0.5)
    await registry.close()

    first, second = recorder.messages[0][1], recorder.messages[1][1]
    assert first["success"] is False
    assert first["error"] == "RateLimited"
    assert set(first) == {"action", "room", "success", "error", "timestamp"}
    assert second["success"] is True
    assert second["data"] == [{"MMSI": "9"}]


@pytest.mark.asyncio
async def test_two_intervals_give_exactly_two_broadcasts(recorder, bounds):
    async def fetch(_bounds, _vessel_type):
        return []

    registry = RoomRegistry(fetch, recorder.deliver, refresh_interval=0.2)
    await registry.subscribe("c1", bounds)
    await asyncio.sleep(0.5)
    await registry.unsubscribe("c1", bounds)
    assert len(recorder.messages) == 2

    await asyncio.sleep(0.3)
    assert len(recorder.messages) == 2
    await registry.close()


@pytest.mark.asyncio
async def test_last_member_failing_tears_room_down(bounds):
    recorder = Recorder(gone={"c1"})

    async def fetch(_bounds, _vessel_type):
        return []

    registry = RoomRegistry(fetch, recorder.deliver, refresh_interval=3600)
    other = BoundingBox(minLat=0, maxLat=1, minLon=0, maxLon=1)
    room = await registry.subscribe("c1", bounds)
    await registry.subscribe("c1", other)

    assert await registry.refresh(room.key) == 0
    assert registry.room_count == 0
    assert registry.scheduler.active_keys == []
    assert registry.rooms_for("c1") == set()
    await registry.close()


@pytest.mark.asyncio
async def test_slow_member_does_not_reorder_room_updates(bounds):
    received = {"a": [], "b": []}
    counter = iter(range(100))

    async def fetch(_bounds, _vessel_type):
        return [next(counter)]

    async def deliver(connection_id, message):
        if connection_id == "a" and message["data"] == [0]:
            await asyncio.sleep(0.3)
        received[connection_id].append(message["data"][0])
        return True

    registry = RoomRegistry(fetch, deliver, refresh_interval=0.1)
    await registry.subscribe("a", bounds)
    await registry.subscribe("b", bounds)
    await asyncio.sleep(0.75)
    await registry.close()

    assert len(received["b"]) >= 3
    assert received["a"] == sorted(received["a"])
    assert received["b"] == sorted(received["b"])
