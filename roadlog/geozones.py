import math
from dataclasses import dataclass
from typing import Optional, Sequence

from roadlog import crud
from roadlog.logging_config import get_logger
from roadlog.variables import (
    DEFAULT_PLACE_RADIUS_M,
    DEFAULT_VISIT_THRESHOLD_MINUTES,
    POI_LOOKUP_KEY,
    VISIT_THRESHOLD_KEY,
)

logger = get_logger("geozones", "geozones.log")


@dataclass(frozen=True)
class Place:
    label: str
    lat: float
    lon: float
    radius_m: float = DEFAULT_PLACE_RADIUS_M


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6_371_000.0  # mean Earth radius in meters
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    return r * 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def place_at(places: Sequence[Place], lat: float, lon: float) -> Optional[Place]:
    """Nearest place whose radius covers (lat, lon), or None."""
    best = None
    best_d = None
    for p in places:
        d = haversine_m(lat, lon, p.lat, p.lon)
        if d <= p.radius_m and (best_d is None or d < best_d):
            best, best_d = p, d
    return best


class NamedPlaceCatalog:
    """
    User-labelled geofences plus the visit settings (threshold, POI lookup flag).

    Places are cached in memory after load() so lookups never touch the database.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._places: list[Place] = []
        self._threshold_minutes = DEFAULT_VISIT_THRESHOLD_MINUTES
        self._poi_lookup_enabled = True
        self._loaded = False

    async def load(self) -> None:
        if self._loaded:
            return
        async with self._session_factory() as db:
            rows = await crud.list_places(db)
            threshold = await crud.read_value(db, VISIT_THRESHOLD_KEY)
            poi = await crud.read_value(db, POI_LOOKUP_KEY)

        self._places = [Place(r.label, r.lat, r.lon, r.radius_m) for r in rows]
        if threshold is not None:
            try:
                self._threshold_minutes = int(threshold)
            except ValueError:
                logger.warning(f"[catalog] Ignoring bad visit threshold {threshold!r}")
        if poi is not None:
            self._poi_lookup_enabled = poi == "1"
        self._loaded = True
        logger.info(f"[catalog] Loaded {len(self._places)} named places")

    @property
    def places(self) -> list:
        return list(self._places)

    @property
    def visit_threshold_minutes(self) -> int:
        return self._threshold_minutes

    @property
    def poi_lookup_enabled(self) -> bool:
        return self._poi_lookup_enabled

    def find_nearest(self, lat: float, lon: float) -> Optional[Place]:
        return place_at(self._places, lat, lon)

    async def save(self, label: str, lat: float, lon: float, radius_m: float = DEFAULT_PLACE_RADIUS_M) -> Place:
        await self.load()
        async with self._session_factory() as db:
            await crud.upsert_place(db, label, lat, lon, radius_m)
        place = Place(label, lat, lon, radius_m)
        self._places = [p for p in self._places if p.label.lower() != label.lower()]
        self._places.append(place)
        logger.info(f"[catalog] Saved \"{label}\" at {lat}, {lon} r={radius_m}m")
        return place

    async def delete(self, label: str) -> bool:
        await self.load()
        async with self._session_factory() as db:
            removed = await crud.delete_place(db, label)
        self._places = [p for p in self._places if p.label.lower() != label.lower()]
        logger.info(f"[catalog] Deleted \"{label}\" removed={removed}")
        return removed

    async def set_visit_threshold_minutes(self, minutes: int) -> None:
        async with self._session_factory() as db:
            await crud.write_value(db, VISIT_THRESHOLD_KEY, str(int(minutes)))
        self._threshold_minutes = int(minutes)
        logger.info(f"[catalog] Visit threshold set to {minutes}min")

    async def set_poi_lookup_enabled(self, enabled: bool) -> None:
        async with self._session_factory() as db:
            await crud.write_value(db, POI_LOOKUP_KEY, "1" if enabled else "0")
        self._poi_lookup_enabled = bool(enabled)
        logger.info(f"[catalog] POI lookup {'enabled' if enabled else 'disabled'}")
