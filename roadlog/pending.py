"""
Reconciliation of events recorded by the out-of-process watcher.

While this process is down, the device-side watcher runs its own copy of the
state machine and appends {type, ts[, lat, lon]} entries to a redis stream. On
startup we import them into the log and delete them from the stream. The watcher
stays silent while our heartbeat key is fresh.
"""
import asyncio
import json
import time
import uuid
from dataclasses import dataclass

from roadlog.crud import to_dt
from roadlog.events import EventKind, TripEvent
from roadlog.logging_config import get_logger
from roadlog.variables import ALIVE_KEY, PENDING_STREAM

logger = get_logger("pending", "pending.log")

# ids for drained events are derived from the record, so re-draining the same
# record (e.g. after a crash before the stream was cleared) is a no-op
PENDING_NAMESPACE = uuid.UUID("6f1c2a34-8f0e-4d55-9b0a-2d7c5e1f9a41")


@dataclass
class DrainResult:
    imported: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"imported": self.imported, "duplicates": self.duplicates,
                "skipped": self.skipped, "failed": self.failed}


def _text(v):
    return v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v


def record_from_fields(fields: dict) -> dict:
    data = {_text(k): _text(v) for k, v in fields.items()}
    if "data" in data:
        decoded = json.loads(data["data"])
        if not isinstance(decoded, dict):
            raise ValueError("pending record is not an object")
        return decoded
    return data


def event_from_record(record: dict) -> TripEvent:
    """Raises ValueError/KeyError/TypeError for malformed records."""
    kind = EventKind(str(record.get("type") or "start"))
    if kind == EventKind.VISIT:
        raise ValueError("visits are not queued by the watcher")
    ts_ms = int(record["ts"])
    if ts_ms <= 0:
        raise ValueError(f"bad timestamp {ts_ms}")

    lat = lon = None
    if record.get("lat") not in (None, "") and record.get("lon") not in (None, ""):
        lat, lon = float(record["lat"]), float(record["lon"])

    return TripEvent(
        id=str(uuid.uuid5(PENDING_NAMESPACE, f"{kind.value}:{ts_ms}")),
        kind=kind,
        timestamp=to_dt(ts_ms),
        lat=lat,
        lon=lon,
    )


class PendingEventDrain:
    def __init__(self, r, store, stream: str = PENDING_STREAM):
        self._r = r
        self._store = store
        self._stream = stream

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def drain(self) -> DrainResult:
        result = DrainResult()
        try:
            entries = await self._run(self._r.xrange, self._stream)
        except Exception as e:
            logger.warning(f"[drain] Pending queue unavailable: {e!r}")
            return result
        if not entries:
            return result

        drained = []
        for _id, fields in entries:
            try:
                event = event_from_record(record_from_fields(fields))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[drain] Skipping malformed pending record {_id}: {e!r}")
                result.skipped += 1
                drained.append(_id)
                continue

            try:
                inserted = await self._store.insert_from_external_source(event)
            except Exception as e:
                # left on the stream; the next startup retries it under the same id
                logger.exception(f"[drain] Failed to store pending record {_id}: {e}")
                result.failed += 1
                continue

            drained.append(_id)
            if inserted:
                result.imported += 1
                logger.info(f"[drain] Drained native event: {event.kind.value} at {event.timestamp.isoformat()}")
            else:
                result.duplicates += 1

        if drained:
            try:
                await self._run(lambda: self._r.xdel(self._stream, *drained))
            except Exception as e:
                logger.warning(f"[drain] Failed to clear pending queue: {e!r}")

        logger.info(f"[drain] imported={result.imported} duplicates={result.duplicates} "
                    f"skipped={result.skipped} failed={result.failed}")
        return result


class PrimaryHeartbeat:
    """Tells the out-of-process watcher that this process is handling readings."""

    def __init__(self, r, key: str = ALIVE_KEY):
        self._r = r
        self._key = key

    async def __call__(self) -> None:
        now_ms = int(time.time() * 1000)
        await asyncio.get_running_loop().run_in_executor(None, lambda: self._r.set(self._key, now_ms))
