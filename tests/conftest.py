import datetime as dt
import os

os.environ.setdefault("LOG_DIR", os.path.join(os.path.dirname(__file__), ".logs"))

import fakeredis
import pytest

from roadlog.database import init_models, make_engine, make_sessionmaker
from roadlog.event_store import EventStore
from roadlog.geocode import GeocodeResult
from roadlog.geozones import NamedPlaceCatalog
from roadlog.location import LocationFix

UTC = dt.timezone.utc
MEMORY_DB = "sqlite+aiosqlite:///:memory:"

T0 = dt.datetime(2024, 5, 1, 18, 42, 0, tzinfo=UTC)

# Springfield, OR
WORK = (44.0462, -123.0220)


def at(minutes: float = 0, seconds: float = 0) -> dt.datetime:
    return T0 + dt.timedelta(minutes=minutes, seconds=seconds)


class FakeGeocoder:
    def __init__(self, result=None, fail=False):
        self.result = result if result is not None else GeocodeResult(
            address="Main St, Springfield, OR", poi_name="Starbucks", poi_type="cafe")
        self.fail = fail
        self.calls = []

    async def lookup(self, lat, lon):
        self.calls.append((lat, lon))
        if self.fail:
            raise ConnectionError("network down")
        return self.result


class FakeLocationProvider:
    def __init__(self, last=None, fresh=None, granted=True, raise_on_last=False):
        self.last = last
        self.fresh = fresh
        self.granted = granted
        self.raise_on_last = raise_on_last
        self.fresh_calls = 0

    async def permission_granted(self):
        return self.granted

    async def last_known(self):
        if self.raise_on_last:
            raise RuntimeError("provider unavailable")
        return self.last

    async def low_power_fix(self, wait_seconds):
        self.fresh_calls += 1
        return self.fresh


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.shown = []

    async def show(self, notif_id, title, body):
        if self.fail:
            raise RuntimeError("notification service down")
        self.shown.append((notif_id, title, body))
        return True


def fix(lat=WORK[0], lon=WORK[1], address="Main St, Springfield, OR", source="last_known"):
    return LocationFix(ok=True, lat=lat, lon=lon, address=address, source=source)


@pytest.fixture
async def sessions():
    engine = make_engine(MEMORY_DB)
    await init_models(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
async def store(sessions):
    s = EventStore(sessions)
    await s.load()
    return s


@pytest.fixture
async def catalog(sessions):
    c = NamedPlaceCatalog(sessions)
    await c.load()
    return c


@pytest.fixture
def fake_redis():
    r = fakeredis.FakeRedis()
    yield r
    r.flushall()
