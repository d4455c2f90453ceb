import json

import pytest
from fastapi.testclient import TestClient

from roadlog.main import build_services, create_app
from roadlog.variables import ACTIVITY_STREAM, NOTIFY_STREAM, PENDING_STREAM

from conftest import MEMORY_DB, FakeGeocoder

TS = 1_714_588_920_000


@pytest.fixture
def make_client(fake_redis):
    def _make(drain_on_startup=False):
        async def factory():
            return await build_services(MEMORY_DB, redis_client=fake_redis, geocoder=FakeGeocoder())

        return TestClient(create_app(factory, drain_on_startup=drain_on_startup, start_monitor=False))

    return _make


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "monitor": "stopped", "driving": False, "events": 0}


def test_activity_is_queued(client, fake_redis):
    r = client.post("/activity", json={"type": "IN_VEHICLE", "confidence": 88, "ts": TS})
    assert r.status_code == 200
    entries = fake_redis.xrange(ACTIVITY_STREAM)
    assert len(entries) == 1
    assert json.loads(entries[0][1][b"data"]) == {"type": "IN_VEHICLE", "confidence": 88, "ts": TS}


def test_activity_rejects_bad_confidence(client):
    assert client.post("/activity", json={"type": "still", "confidence": 140}).status_code == 422


def test_simulated_trip_uses_reported_location(client, fake_redis):
    client.post("/location", json={"lat": 44.05, "lon": -123.02, "address": "Main St, Springfield, OR"})

    start = client.post("/simulate/start").json()
    assert start["ok"]
    assert start["event"]["address"] == "Main St, Springfield, OR"
    client.post("/simulate/park")

    log = client.get("/driving-log", params={"limit": 5}).json()
    assert log["count"] == 2
    assert [i["type"] for i in log["items"]] == ["park", "start"]
    assert fake_redis.xlen(NOTIFY_STREAM) == 2

    current = client.get("/current-visit").json()
    assert current["visit"]["address"] == "Main St, Springfield, OR"


def test_named_places_crud(client):
    r = client.post("/places", json={"label": "Work", "lat": 44.05, "lon": -123.02})
    assert r.status_code == 200
    assert r.json()["label"] == "Work"

    places = client.get("/places").json()
    assert places["count"] == 1

    assert client.delete("/places/work").json() == {"ok": True, "removed": True}
    assert client.get("/places").json()["count"] == 0


def test_save_place_without_any_location_is_rejected(client):
    client.post("/location", json={"lat": 44.05, "lon": -123.02, "permission": "denied"})
    r = client.post("/places", json={"label": "Work"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Location not available"


def test_settings(client):
    assert client.get("/settings").json()["visit_threshold_minutes"] == 10
    r = client.put("/settings", json={"visit_threshold_minutes": 25})
    assert r.json() == {"ok": True, "visit_threshold_minutes": 25, "poi_lookup_enabled": True}
    assert client.put("/settings", json={"visit_threshold_minutes": -1}).status_code == 422


def test_event_editing_endpoints(client):
    client.post("/location", json={"lat": 44.05, "lon": -123.02})
    event_id = client.post("/simulate/start").json()["event"]["id"]

    # only visits carry labels
    assert client.patch(f"/events/{event_id}/label", json={"label": "x"}).status_code == 404

    assert client.delete(f"/events/{event_id}").json() == {"ok": True, "removed": True}
    client.post("/simulate/park")
    assert client.delete("/events").json() == {"ok": True, "removed": 1}
    assert client.get("/driving-log").json()["count"] == 0


def test_migrate_endpoint(client):
    client.post("/location", json={"lat": 44.05, "lon": -123.02})
    client.post("/simulate/start")
    result = client.post("/events/migrate").json()
    assert result["ok"]
    assert result["total"] == 1
    assert result["errors"] == []


def test_pending_events_drained_on_startup(make_client, fake_redis):
    fake_redis.xadd(PENDING_STREAM, {"type": "start", "ts": TS})
    fake_redis.xadd(PENDING_STREAM, {"type": "park", "ts": TS + 900_000})

    with make_client(drain_on_startup=True) as c:
        items = c.get("/driving-log").json()["items"]
        assert [i["type"] for i in items] == ["park", "start"]
        assert items[1]["timestamp"] == "2024-05-01T18:42:00Z"
    assert fake_redis.xlen(PENDING_STREAM) == 0
