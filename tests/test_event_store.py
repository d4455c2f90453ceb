import json

import pytest

from roadlog import crud
from roadlog.event_store import EventStore, clamp_limit
from roadlog.events import EventKind, TripEvent, new_event_id
from roadlog.geocode import GeocodeResult
from roadlog.variables import MAX_EVENTS, STORAGE_KEY

from conftest import WORK, FakeGeocoder, at, fix


def start(minutes, **kw):
    return TripEvent(id=new_event_id(), kind=EventKind.START, timestamp=at(minutes), **kw)


def park(minutes, **kw):
    return TripEvent(id=new_event_id(), kind=EventKind.PARK, timestamp=at(minutes), **kw)


def visit(begin, end, **kw):
    return TripEvent(id=new_event_id(), kind=EventKind.VISIT, timestamp=at(begin), end_timestamp=at(end), **kw)


def test_visit_requires_end_after_start():
    with pytest.raises(ValueError):
        TripEvent(id="v", kind=EventKind.VISIT, timestamp=at(10), end_timestamp=at(5))
    with pytest.raises(ValueError):
        TripEvent(id="v", kind=EventKind.VISIT, timestamp=at(10))


def test_duration_minutes_only_for_visits():
    assert visit(0, 15).duration_minutes == 15
    assert visit(0, 15.9).duration_minutes == 15
    assert start(0).duration_minutes is None


async def test_insert_keeps_newest_first_by_effective_timestamp(store):
    s = await store.insert(start(60))
    v = await store.insert(visit(0, 45))
    p = await store.insert(park(50))

    ids = [e.id for e in await store.list_recent(limit=10)]
    assert ids == [s.id, p.id, v.id]


async def test_visit_sorts_by_its_end_not_its_arrival(store):
    s = await store.insert(start(30))
    v = await store.insert(visit(0, 20))
    assert [e.id for e in await store.list_recent(limit=10)] == [s.id, v.id]

    long_visit = await store.insert(visit(-120, 40))
    assert [e.id for e in await store.list_recent(limit=10)] == [long_visit.id, s.id, v.id]


async def test_capacity_evicts_logically_oldest(store):
    oldest = visit(-600, -500)
    await store.insert(oldest)
    for i in range(MAX_EVENTS):
        await store.insert(start(i))

    assert len(store) == MAX_EVENTS
    assert all(e.id != oldest.id for e in store.events)
    assert store.events[-1].timestamp == at(0)


async def test_capacity_eviction_uses_effective_time_for_visits(sessions):
    small = EventStore(sessions, max_events=2)
    v = await small.insert(visit(-100, 50))   # arrived first, left last
    s1 = await small.insert(start(10))
    s2 = await small.insert(start(20))
    assert [e.id for e in small.events] == [v.id, s2.id]
    assert s1.id not in [e.id for e in small.events]


async def test_delete_is_noop_for_unknown_id(store):
    e = await store.insert(start(0))
    assert await store.delete("missing") is False
    assert len(store) == 1
    assert await store.delete(e.id) is True
    assert len(store) == 0


async def test_clear(store):
    await store.insert(start(0))
    await store.insert(park(5))
    assert await store.clear() == 2
    assert await store.list_recent(limit=10) == []


async def test_update_label_trims_and_clears(store):
    v = await store.insert(visit(0, 20, label="Gym"))

    assert await store.update_label(v.id, "  Home  ") is True
    assert (await store.get(v.id)).label == "Home"

    assert await store.update_label(v.id, "   ") is True
    assert (await store.get(v.id)).label is None

    assert await store.update_label("missing", "Work") is False


async def test_update_label_ignores_non_visits(store):
    s = await store.insert(start(0))
    assert await store.update_label(s.id, "Home") is False
    assert (await store.get(s.id)).label is None


async def test_list_recent_filters_and_clamps(store):
    for i in range(60):
        await store.insert(start(i) if i % 2 else park(i))
    await store.insert(visit(100, 130))

    assert len(await store.list_recent(limit=0)) == 1
    assert len(await store.list_recent(limit=1000)) == 50
    trips = await store.list_recent([EventKind.START, EventKind.PARK], 5)
    assert len(trips) == 5 and all(e.kind != EventKind.VISIT for e in trips)
    visits = await store.list_recent([EventKind.VISIT], 5)
    assert len(visits) == 1


@pytest.mark.parametrize("raw,expected", [(0, 1), (-3, 1), (7, 7), (50, 50), (51, 50), ("12", 12), ("x", 10), (None, 10)])
def test_clamp_limit(raw, expected):
    assert clamp_limit(raw) == expected


async def test_persisted_state_survives_reload(sessions, store):
    await store.insert(start(0, lat=1.5, lon=2.5, address="Main St"))
    await store.insert(visit(5, 30, label="Work"))

    reloaded = EventStore(sessions)
    await reloaded.load()
    assert reloaded.events == store.events


async def test_round_trip_serialization(store):
    await store.insert(start(0, lat=44.05, lon=-123.02, address="Main St, Springfield, OR"))
    await store.insert(park(40))
    await store.insert(visit(41, 90, lat=44.0, lon=-123.0, label="Starbucks"))

    restored = EventStore.loads(store.dumps())
    assert restored == list(store.events)


async def test_serialized_records_omit_absent_fields(store):
    await store.insert(park(0))

    record = json.loads(store.dumps())[0]
    assert set(record) == {"id", "type", "timestamp"}
    assert record["type"] == "park"
    assert record["timestamp"] == "2024-05-01T18:42:00Z"


@pytest.mark.parametrize("raw", ["{not json", '{"a": 1}', "42"])
async def test_corrupt_storage_loads_empty(sessions, raw):
    async with sessions() as db:
        await crud.write_value(db, STORAGE_KEY, raw)
    s = EventStore(sessions)
    await s.load()
    assert len(s) == 0
    await s.insert(start(0))
    assert len(s) == 1


async def test_bad_records_are_dropped_individually(sessions):
    good = start(0).to_dict()
    raw = '[{"type": "park"}, "junk", {"id": "x", "timestamp": "not a date"}, %s]' % json.dumps(good)
    async with sessions() as db:
        await crud.write_value(db, STORAGE_KEY, raw)
    s = EventStore(sessions)
    await s.load()
    assert [e.id for e in s.events] == [good["id"]]


async def test_log_event_copies_location(store):
    event = await store.log_event(EventKind.PARK, fix(), at=at(3))
    assert event.timestamp == at(3)
    assert (event.lat, event.lon) == WORK
    assert event.address == "Main St, Springfield, OR"


async def test_external_insert_skips_known_ids(store):
    e = start(0)
    assert await store.insert_from_external_source(e) is True
    assert await store.insert_from_external_source(e) is False
    assert len(store) == 1


# =====================================================================
# Migration
# =====================================================================
async def test_migrate_backfills_address_and_labels(store, catalog):
    await catalog.save("Work", *WORK)
    at_work = await store.insert(visit(0, 30, lat=WORK[0], lon=WORK[1]))
    elsewhere = await store.insert(visit(40, 80, lat=45.0, lon=-122.0))
    trip = await store.insert(start(90, lat=45.1, lon=-122.1))
    no_coords = await store.insert(park(100))
    done = await store.insert(park(110, lat=1.0, lon=1.0, address="Known"))

    geocoder = FakeGeocoder()
    result = await store.migrate(geocoder, catalog, min_interval_seconds=0)

    assert result.total == 5
    assert result.updated == 3
    assert result.errors == []
    assert (await store.get(at_work.id)).label == "Work"
    assert (await store.get(at_work.id)).address == "Main St, Springfield, OR"
    assert (await store.get(elsewhere.id)).label == "Starbucks"
    assert (await store.get(trip.id)).address == "Main St, Springfield, OR"
    assert (await store.get(trip.id)).label is None
    assert (await store.get(no_coords.id)).address is None
    assert (await store.get(done.id)).address == "Known"
    assert len(geocoder.calls) == 3


async def test_migrate_skips_lookup_when_named_place_covers_labelled_visit(store, catalog):
    await catalog.save("Home", *WORK)
    await store.insert(visit(0, 30, lat=WORK[0], lon=WORK[1], address="Somewhere"))
    geocoder = FakeGeocoder()
    result = await store.migrate(geocoder, catalog, min_interval_seconds=0)
    assert result.updated == 1
    assert geocoder.calls == []


async def test_migrate_tolerates_failures(store, catalog):
    await store.insert(start(0, lat=1.0, lon=1.0))
    await store.insert(park(10, lat=2.0, lon=2.0))

    result = await store.migrate(FakeGeocoder(fail=True), catalog, min_interval_seconds=0)
    assert result.updated == 0
    assert result.total == 2
    assert len(result.errors) == 2


async def test_migrate_respects_poi_flag(store, catalog):
    await catalog.set_poi_lookup_enabled(False)
    v = await store.insert(visit(0, 30, lat=45.0, lon=-122.0))
    await store.migrate(FakeGeocoder(), catalog, min_interval_seconds=0)
    refreshed = await store.get(v.id)
    assert refreshed.address == "Main St, Springfield, OR"
    assert refreshed.label is None


async def test_migrate_does_not_overwrite_user_edits_made_meanwhile(store, catalog):
    v = await store.insert(visit(0, 30, lat=45.0, lon=-122.0))

    class EditingGeocoder(FakeGeocoder):
        async def lookup(self, lat, lon):
            await store.update_label(v.id, "My spot")
            return GeocodeResult(address="Elm St", poi_name="Starbucks")

    result = await store.migrate(EditingGeocoder(), catalog, min_interval_seconds=0)
    refreshed = await store.get(v.id)
    assert refreshed.label == "My spot"
    assert refreshed.address == "Elm St"
    assert result.updated == 1


async def test_migrate_paces_requests(store, catalog):
    import time

    await store.insert(start(0, lat=1.0, lon=1.0))
    await store.insert(park(10, lat=2.0, lon=2.0))
    await store.insert(start(20, lat=3.0, lon=3.0))

    began = time.monotonic()
    await store.migrate(FakeGeocoder(), catalog, min_interval_seconds=0.2)
    assert time.monotonic() - began >= 0.35
