"""
Persistent, capacity-bounded trip log.

The whole log is one JSON array under a single storage key. Every mutation runs
under one asyncio.Lock: mutate the in-memory list, re-sort newest-first by
effective timestamp, truncate to capacity, rewrite the array.
"""
import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Optional

from aiolimiter import AsyncLimiter
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from roadlog import crud
from roadlog.events import (
    EventKind,
    TripEvent,
    dumps_events,
    loads_events,
    new_event_id,
    sort_key,
    utcnow,
)
from roadlog.logging_config import get_logger
from roadlog.variables import (
    LIST_LIMIT_DEFAULT,
    LIST_LIMIT_MAX,
    LIST_LIMIT_MIN,
    MAX_EVENTS,
    MIGRATION_MIN_INTERVAL_SECONDS,
    STORAGE_KEY,
)

logger = get_logger("event_store", "event_store.log")


@dataclass
class MigrationResult:
    updated: int = 0
    total: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"updated": self.updated, "total": self.total, "errors": list(self.errors)}


def clamp_limit(limit) -> int:
    try:
        n = int(limit)
    except (TypeError, ValueError):
        n = LIST_LIMIT_DEFAULT
    return max(LIST_LIMIT_MIN, min(LIST_LIMIT_MAX, n))


# ---------- Save logic ----------
@retry(
    wait=wait_exponential_jitter(initial=0.2, max=2),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type((DBAPIError, OperationalError, OSError)),
    reraise=True,
)
async def write_with_retry(session_factory, key: str, value: str) -> None:
    async with session_factory() as db:
        await crud.write_value(db, key, value)


class EventStore:
    def __init__(self, session_factory, max_events: int = MAX_EVENTS, storage_key: str = STORAGE_KEY):
        self._session_factory = session_factory
        self._max_events = max_events
        self._key = storage_key
        self._events: list[TripEvent] = []
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def events(self) -> tuple:
        return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)

    # =====================================================================
    # Load / persist
    # =====================================================================
    async def load(self) -> None:
        async with self._lock:
            await self._ensure_loaded()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._session_factory() as db:
            raw = await crud.read_value(db, self._key)

        events = []
        if raw and raw.strip():
            try:
                events = loads_events(raw)
            except (ValueError, TypeError):
                # Losing history beats failing startup.
                logger.exception(f"[store] Stored events under {self._key!r} are unreadable, starting empty")
                events = []
        self._events = events
        self._resort()
        self._loaded = True
        logger.info(f"[store] Initialized with {len(self._events)} events")

    async def _persist(self) -> None:
        await write_with_retry(self._session_factory, self._key, dumps_events(self._events))

    def _resort(self) -> Optional[list]:
        self._events.sort(key=sort_key, reverse=True)
        if len(self._events) > self._max_events:
            evicted = self._events[self._max_events:]
            self._events = self._events[:self._max_events]
            return evicted
        return None

    def dumps(self) -> str:
        return dumps_events(self._events)

    @staticmethod
    def loads(raw: str) -> list:
        events = loads_events(raw)
        events.sort(key=sort_key, reverse=True)
        return events

    # =====================================================================
    # Mutations
    # =====================================================================
    async def insert(self, event: TripEvent) -> TripEvent:
        async with self._lock:
            await self._ensure_loaded()
            await self._insert_locked(event)
        return event

    async def insert_from_external_source(self, event: TripEvent) -> bool:
        """
        Insert an event synthesized from an outside record. Returns False when an
        event with the same id is already stored.
        """
        async with self._lock:
            await self._ensure_loaded()
            if any(e.id == event.id for e in self._events):
                logger.info(f"[store] Skipped external event {event.id}: already stored")
                return False
            await self._insert_locked(event)
        logger.info(f"[store] Inserted external event: {event.kind.value} at {event.timestamp.isoformat()}")
        return True

    async def _insert_locked(self, event: TripEvent) -> None:
        self._events.append(event)
        evicted = self._resort()
        if evicted:
            logger.info(f"[store] Evicted {len(evicted)} oldest event(s): {[e.id for e in evicted]}")
        await self._persist()

    async def log_event(self, kind: EventKind, location=None, at: Optional[dt.datetime] = None) -> TripEvent:
        """Create and store a start/park event from a best-effort location fix."""
        lat = lon = address = None
        if location is not None and location.ok:
            lat, lon, address = location.lat, location.lon, location.address

        event = TripEvent(
            id=new_event_id(),
            kind=kind,
            timestamp=at or utcnow(),
            lat=lat,
            lon=lon,
            address=address,
        )
        await self.insert(event)
        logger.info(f"[store] Logged {kind.value} event: {event.id}"
                    f"{' at ' + address if address else ''}")
        return event

    async def delete(self, event_id: str) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            before = len(self._events)
            self._events = [e for e in self._events if e.id != event_id]
            if len(self._events) == before:
                return False
            await self._persist()
        logger.info(f"[store] Deleted event {event_id}")
        return True

    async def clear(self) -> int:
        async with self._lock:
            await self._ensure_loaded()
            count = len(self._events)
            self._events = []
            await self._persist()
        logger.info(f"[store] Cleared {count} events")
        return count

    async def update_label(self, event_id: str, label: Optional[str]) -> bool:
        new_label = (label or "").strip() or None
        async with self._lock:
            await self._ensure_loaded()
            for i, e in enumerate(self._events):
                if e.id != event_id:
                    continue
                if e.kind != EventKind.VISIT:
                    return False
                self._events[i] = e.with_changes(label=new_label)
                await self._persist()
                logger.info(f"[store] Updated label for {event_id}: {new_label!r}")
                return True
        return False

    # =====================================================================
    # Queries
    # =====================================================================
    async def get(self, event_id: str) -> Optional[TripEvent]:
        await self.load()
        return next((e for e in self._events if e.id == event_id), None)

    async def list_recent(self, kinds: Optional[Iterable[EventKind]] = None, limit=LIST_LIMIT_DEFAULT) -> list:
        await self.load()
        n = clamp_limit(limit)
        wanted = set(kinds) if kinds else None
        out = []
        for e in self._events:
            if wanted is not None and e.kind not in wanted:
                continue
            out.append(e)
            if len(out) >= n:
                break
        return out

    # =====================================================================
    # Backfill of address / label for historical events
    # =====================================================================
    async def migrate(self, geocoder, catalog=None,
                      min_interval_seconds: float = MIGRATION_MIN_INTERVAL_SECONDS) -> MigrationResult:
        """
        Fill in missing address (any kind) and label (visits) for events that have
        coordinates. Named places are applied before POI lookups; lookups are paced
        at most one per `min_interval_seconds`. A failing event is recorded in
        `errors` and the pass moves on.
        """
        await self.load()
        snapshot = list(self._events)
        result = MigrationResult(total=len(snapshot))
        limiter = AsyncLimiter(1, min_interval_seconds) if min_interval_seconds > 0 else None
        poi_enabled = catalog.poi_lookup_enabled if catalog is not None else True

        for e in snapshot:
            needs_address = e.address is None
            needs_label = e.kind == EventKind.VISIT and e.label is None
            if not e.has_location or not (needs_address or needs_label):
                continue

            label = None
            if needs_label and catalog is not None:
                place = catalog.find_nearest(e.lat, e.lon)
                label = place.label if place else None

            address = None
            if needs_address or (needs_label and label is None and poi_enabled):
                try:
                    if limiter is not None:
                        async with limiter:
                            res = await geocoder.lookup(e.lat, e.lon)
                    else:
                        res = await geocoder.lookup(e.lat, e.lon)
                except Exception as exc:
                    logger.warning(f"[migrate] Lookup failed for {e.id}: {exc!r}")
                    result.errors.append(f"{e.id}: {exc}")
                    res = None
                else:
                    if res is None:
                        result.errors.append(f"{e.id}: lookup returned no result")

                if res is not None:
                    address = res.address if needs_address else None
                    if needs_label and label is None and poi_enabled:
                        label = res.poi_name

            if address is None and label is None:
                continue
            if await self._apply_backfill(e.id, address, label):
                result.updated += 1

        logger.info(f"[migrate] Updated {result.updated}/{result.total} events, {len(result.errors)} errors")
        return result

    async def _apply_backfill(self, event_id: str, address: Optional[str], label: Optional[str]) -> bool:
        async with self._lock:
            for i, e in enumerate(self._events):
                if e.id != event_id:
                    continue
                changes = {}
                if address and e.address is None:
                    changes["address"] = address
                if label and e.kind == EventKind.VISIT and e.label is None:
                    changes["label"] = label
                if not changes:
                    return False
                self._events[i] = e.with_changes(**changes)
                await self._persist()
                return True
        # deleted while the lookup was in flight
        return False
