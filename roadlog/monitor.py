# roadlog/monitor.py
"""
Driving detection: a debounced state machine over activity-classifier readings.

    still/on_foot/walking  -> not driving (emit park if we were driving)
    in_vehicle x DEBOUNCE  -> driving     (emit start anchored at the first reading)

transition() is pure; DrivingMonitor owns the state, consumes the stream one
reading at a time and runs capture-and-log for every emitted transition.
"""
import asyncio
import datetime as dt
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import pytz

from roadlog.config import LOCAL_TZ, LOCATION_TIMEOUT_SECONDS
from roadlog.events import EventKind, TripEvent, utcnow
from roadlog.location import LocationFix, acquire_best_effort
from roadlog.logging_config import get_logger
from roadlog.variables import (
    DEBOUNCE_COUNT,
    HEARTBEAT_INTERVAL_SECONDS,
    MIN_CONFIDENCE,
    NOTIF_ID_PARK,
    NOTIF_ID_START,
    STOPPED_TYPES,
    VEHICLE_TYPES,
)

logger = get_logger("monitor", "monitor.log")


UTC = dt.timezone.utc


def normalize_activity_type(value) -> str:
    """'IN_VEHICLE', 'inVehicle', 'in vehicle' -> 'in_vehicle'."""
    s = str(value or "").strip()
    s = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", s)
    return re.sub(r"[\s\-]+", "_", s).lower() or "unknown"


@dataclass(frozen=True)
class ActivityReading:
    type: str
    confidence: int
    timestamp: dt.datetime

    @classmethod
    def create(cls, activity_type, confidence, timestamp: Optional[dt.datetime] = None) -> "ActivityReading":
        return cls(
            type=normalize_activity_type(activity_type),
            confidence=int(confidence),
            timestamp=timestamp or utcnow(),
        )


@dataclass(frozen=True)
class DebounceState:
    is_driving: bool = False
    consecutive_count: int = 0
    run_start: Optional[dt.datetime] = None


@dataclass(frozen=True)
class Transition:
    kind: EventKind
    timestamp: dt.datetime


INITIAL_STATE = DebounceState()


# =====================================================================
# Pure transition
# =====================================================================
def transition(state: DebounceState, reading: ActivityReading):
    """
    Returns (new_state, Transition | None).

    Low-confidence readings and unrelated activity types leave the state untouched.
    """
    if reading.confidence < MIN_CONFIDENCE:
        return state, None

    if reading.type in VEHICLE_TYPES:
        count = state.consecutive_count + 1
        run_start = reading.timestamp if count == 1 or state.run_start is None else state.run_start
        if count >= DEBOUNCE_COUNT and not state.is_driving:
            return DebounceState(True, count, run_start), Transition(EventKind.START, run_start)
        return DebounceState(state.is_driving, count, run_start), None

    if reading.type in STOPPED_TYPES:
        if state.is_driving:
            return DebounceState(False, 0, None), Transition(EventKind.PARK, reading.timestamp)
        return DebounceState(False, 0, None), None

    # running, on_bicycle, unknown, tilting, invalid
    return state, None


def format_clock(ts: dt.datetime, tz_name: str = LOCAL_TZ) -> str:
    local = ts.astimezone(pytz.timezone(tz_name))
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def notification_text(event: TripEvent, tz_name: str = LOCAL_TZ):
    """(id, title, body) for a start/park event."""
    clock = format_clock(event.timestamp, tz_name)
    if event.kind == EventKind.START:
        notif_id, title, verb, bare = NOTIF_ID_START, "Trip started", "Trip started at", "Trip started"
    else:
        notif_id, title, verb, bare = NOTIF_ID_PARK, "You parked", "Parked at", "Parked"
    if event.address:
        body = f"{verb} {event.address} • {clock}"
    else:
        body = f"{bare} • {clock}"
    return notif_id, title, body


@dataclass(frozen=True)
class OngoingVisit:
    since: dt.datetime
    location: LocationFix

    def to_dict(self) -> dict:
        out = {"since": self.since.astimezone(UTC).isoformat().replace("+00:00", "Z")}
        if self.location.ok:
            out.update(lat=self.location.lat, lon=self.location.lon)
            if self.location.address:
                out["address"] = self.location.address
        out["minutes"] = int((utcnow() - self.since).total_seconds() // 60)
        return out


# =====================================================================
# Monitor service
# =====================================================================
class DrivingMonitor:
    def __init__(self, store, location_provider=None, notifier=None, visit_detector=None, geocoder=None,
                 heartbeat=None, tz_name: str = LOCAL_TZ, location_timeout: float = LOCATION_TIMEOUT_SECONDS):
        self._store = store
        self._location_provider = location_provider
        self._notifier = notifier
        self._visits = visit_detector
        self._geocoder = geocoder
        self._heartbeat = heartbeat
        self._tz_name = tz_name
        self._location_timeout = location_timeout

        self._state = INITIAL_STATE
        self._ongoing: Optional[OngoingVisit] = None
        self._raw_listeners: list[Callable] = []
        self._task: Optional[asyncio.Task] = None
        self._last_alive_ping: Optional[float] = None
        # one transition (state change plus capture-and-log) at a time
        self._transition_lock = asyncio.Lock()

    @property
    def state(self) -> DebounceState:
        return self._state

    @property
    def is_driving(self) -> bool:
        return self._state.is_driving

    @property
    def current_visit(self) -> Optional[OngoingVisit]:
        return self._ongoing

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_raw_listener(self, cb: Callable) -> None:
        """cb(reading) is called for every reading before any filtering."""
        self._raw_listeners.append(cb)

    # ---------- stream consumption ----------
    def start(self, stream) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run(stream))
        logger.info("[monitor] Started")
        return self._task

    async def run(self, stream) -> None:
        async for reading in stream:
            try:
                await self.handle(reading)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[monitor] Failed to process reading {reading}: {e}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        async with self._transition_lock:
            self._state = INITIAL_STATE
            self._ongoing = None
        logger.info("[monitor] Stopped")

    async def handle(self, reading: ActivityReading) -> Optional[TripEvent]:
        logger.debug(f"[monitor] Activity: {reading.type} confidence={reading.confidence} "
                     f"isDriving={self._state.is_driving}")
        for cb in self._raw_listeners:
            try:
                cb(reading)
            except Exception as e:
                logger.warning(f"[monitor] Raw listener failed: {e!r}")
        await self._ping_alive()

        async with self._transition_lock:
            self._state, emitted = transition(self._state, reading)
            if emitted is None:
                return None
            return await self._emit(emitted)

    async def _ping_alive(self) -> None:
        if self._heartbeat is None:
            return
        now = time.monotonic()
        if self._last_alive_ping is not None and now - self._last_alive_ping < HEARTBEAT_INTERVAL_SECONDS:
            return
        self._last_alive_ping = now
        try:
            await self._heartbeat()
        except Exception as e:
            logger.warning(f"[monitor] Heartbeat failed: {e!r}")

    # ---------- manual triggers ----------
    async def simulate_trip_start(self) -> TripEvent:
        """Fire the trip-started path without sensor input; anchored at the call instant."""
        async with self._transition_lock:
            self._state = DebounceState(True, DEBOUNCE_COUNT, None)
            return await self._emit(Transition(EventKind.START, utcnow()))

    async def simulate_parked(self) -> TripEvent:
        async with self._transition_lock:
            self._state = DebounceState(False, 0, None)
            return await self._emit(Transition(EventKind.PARK, utcnow()))

    # ---------- capture and log ----------
    async def _emit(self, t: Transition) -> Optional[TripEvent]:
        logger.info(f"[monitor] {'Driving started' if t.kind == EventKind.START else 'Parked'} "
                    f"at {t.timestamp.isoformat()}")
        event, fix = await self._capture_and_log(t)

        if t.kind == EventKind.PARK:
            self._ongoing = OngoingVisit(since=t.timestamp, location=fix)
        elif t.kind == EventKind.START:
            await self._close_visit(t.timestamp)
        return event

    async def _capture_and_log(self, t: Transition):
        fix = await acquire_best_effort(self._location_provider, self._location_timeout, self._geocoder)
        if not fix.ok:
            logger.info(f"[monitor] No location for {t.kind.value}: {fix.error}")

        try:
            event = await self._store.log_event(t.kind, fix, at=t.timestamp)
        except Exception as e:
            logger.exception(f"[monitor] Failed to persist {t.kind.value} event: {e}")
            return None, fix

        await self.notify(event)
        return event, fix

    async def notify(self, event: TripEvent) -> bool:
        if self._notifier is None:
            return False
        notif_id, title, body = notification_text(event, self._tz_name)
        try:
            return bool(await self._notifier.show(notif_id, title, body))
        except Exception as e:
            logger.warning(f"[monitor] Failed to show notification: {e!r}")
            return False

    async def _close_visit(self, departed_at: dt.datetime) -> Optional[TripEvent]:
        ongoing, self._ongoing = self._ongoing, None
        if ongoing is None or self._visits is None:
            return None
        try:
            return await self._visits.log_visit(ongoing.since, departed_at, ongoing.location)
        except Exception as e:
            logger.exception(f"[monitor] Failed to log visit: {e}")
            return None
