import datetime as dt
from typing import Optional

from roadlog.events import EventKind, TripEvent, new_event_id
from roadlog.logging_config import get_logger

logger = get_logger("visits", "visits.log")


def should_log(start: dt.datetime, end: dt.datetime, threshold_minutes: int) -> bool:
    """A dwell is a visit only when it lasts strictly longer than the threshold."""
    return (end - start) > dt.timedelta(minutes=threshold_minutes)


class VisitDetector:
    """
    Turns a dwell (park -> next start) into a labelled visit event.

    Label resolution: named place containing the location, else a one-shot POI
    lookup when enabled. Lookup failures leave the label empty.
    """

    def __init__(self, store, catalog, geocoder=None):
        self._store = store
        self._catalog = catalog
        self._geocoder = geocoder

    async def resolve_label(self, lat: Optional[float], lon: Optional[float]) -> Optional[str]:
        if lat is None or lon is None:
            return None

        place = self._catalog.find_nearest(lat, lon)
        if place is not None:
            return place.label

        if not self._catalog.poi_lookup_enabled or self._geocoder is None:
            return None
        try:
            res = await self._geocoder.lookup(lat, lon)
        except Exception as e:
            logger.warning(f"[visit] POI lookup failed at {lat},{lon}: {e!r}")
            return None
        return res.poi_name if res is not None else None

    async def log_visit(self, start: dt.datetime, end: dt.datetime, location=None) -> Optional[TripEvent]:
        await self._catalog.load()
        threshold = self._catalog.visit_threshold_minutes
        if end < start or not should_log(start, end, threshold):
            logger.info(f"[visit] Dwell of {(end - start).total_seconds():.0f}s not above "
                        f"{threshold}min threshold, skipped")
            return None

        lat = lon = address = None
        if location is not None and location.ok:
            lat, lon, address = location.lat, location.lon, location.address

        label = await self.resolve_label(lat, lon)
        event = TripEvent(
            id=new_event_id(),
            kind=EventKind.VISIT,
            timestamp=start.astimezone(dt.timezone.utc),
            end_timestamp=end.astimezone(dt.timezone.utc),
            lat=lat,
            lon=lon,
            address=address,
            label=label,
        )
        await self._store.insert(event)
        logger.info(f"[visit] Logged visit: {event.duration_minutes}min"
                    f"{' at ' + address if address else ''}"
                    f"{' (' + label + ')' if label else ''}")
        return event
