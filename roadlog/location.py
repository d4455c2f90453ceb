"""
Best-effort location for background capture.

Capture at a transition must never prompt, never wait long, and degrade to
"no location". The tiers are: the last known fix the device reported, then a
fresh low-power fix waited for within a short window. Reverse geocoding is
attempted only when the fix arrives without an address.
"""
import asyncio
import datetime as dt
import json
from dataclasses import dataclass, field
from typing import Optional, Protocol

from roadlog.config import FIX_WAIT_SECONDS, LOCATION_TIMEOUT_SECONDS
from roadlog.crud import to_dt
from roadlog.geocode import short_address
from roadlog.logging_config import get_logger
from roadlog.variables import LOCATION_LAST_KEY, LOCATION_STREAM

logger = get_logger("location", "location.log")

LAST_KNOWN = "last_known"
LOW_POWER_FIX = "low_power_fix"


@dataclass(frozen=True)
class LocationFix:
    ok: bool
    lat: Optional[float] = None
    lon: Optional[float] = None
    address: Optional[str] = None
    accuracy_m: Optional[float] = None
    source: Optional[str] = None
    error: Optional[str] = None
    fix_time: Optional[dt.datetime] = field(default=None, compare=False)

    @classmethod
    def failed(cls, error: str) -> "LocationFix":
        return cls(ok=False, error=error)


NO_LOCATION = LocationFix.failed("no location")


class LocationProvider(Protocol):
    async def permission_granted(self) -> bool: ...

    async def last_known(self) -> Optional[LocationFix]: ...

    async def low_power_fix(self, wait_seconds: float) -> Optional[LocationFix]: ...


def fix_from_mapping(data: dict, source: str) -> Optional[LocationFix]:
    """Build a fix from a device payload ({lat, lon, address?, accuracy_m?, ts?})."""
    try:
        lat = float(data["lat"])
        lon = float(data["lon"])
    except (KeyError, TypeError, ValueError):
        return None
    address = data.get("address")
    if isinstance(address, dict):
        address = short_address(address)
    elif address is not None:
        address = str(address) or None
    accuracy = data.get("accuracy_m")
    try:
        accuracy = float(accuracy) if accuracy not in (None, "") else None
    except (TypeError, ValueError):
        accuracy = None
    ts = data.get("ts")
    if isinstance(ts, str) and ts.isdigit():
        ts = int(ts)
    return LocationFix(
        ok=True, lat=lat, lon=lon, address=address, accuracy_m=accuracy,
        source=source, fix_time=to_dt(ts) if ts not in (None, "") else None,
    )


async def acquire_best_effort(provider: Optional[LocationProvider], timeout: float = LOCATION_TIMEOUT_SECONDS,
                              geocoder=None) -> LocationFix:
    """
    Never raises. Returns LocationFix(ok=False) when permission is missing, no tier
    produced a fix, or the fix itself exceeded `timeout`. Address enrichment only
    gets whatever is left of `timeout`, so the call never takes longer than that.
    """
    if provider is None:
        return LocationFix.failed("no location provider")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        fix = await asyncio.wait_for(_tiered(provider, timeout), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[location] Timed out after {timeout}s")
        return LocationFix.failed("location timeout")
    except Exception as e:
        logger.exception(f"[location] Provider failed: {e}")
        return LocationFix.failed(f"Failed to acquire location: {e}")

    remaining = deadline - loop.time()
    if fix.ok and not fix.address and geocoder is not None and remaining > 0:
        try:
            res = await asyncio.wait_for(geocoder.lookup(fix.lat, fix.lon), timeout=remaining)
        except asyncio.TimeoutError:
            logger.info(f"[location] Reverse geocode skipped, {timeout}s budget used up")
            res = None
        except Exception as e:
            logger.warning(f"[location] Reverse geocode failed: {e!r}")
            res = None
        if res is not None and res.address:
            fix = LocationFix(ok=True, lat=fix.lat, lon=fix.lon, address=res.address,
                              accuracy_m=fix.accuracy_m, source=fix.source, fix_time=fix.fix_time)
    return fix


async def _tiered(provider: LocationProvider, timeout: float) -> LocationFix:
    # Only check permission: never request it from a background path.
    if not await provider.permission_granted():
        return LocationFix.failed("Location permission not granted")

    try:
        last = await provider.last_known()
    except Exception as e:
        logger.warning(f"[location] last_known failed, falling back: {e!r}")
        last = None
    if last is not None and last.ok:
        return last

    fresh = await provider.low_power_fix(min(FIX_WAIT_SECONDS, timeout))
    if fresh is not None and fresh.ok:
        return fresh
    return LocationFix.failed("no fix available")


class RedisLocationProvider:
    """
    Location reported by the device through POST /location.

    The latest fix is kept in a hash; every fix is also appended to a stream so a
    capture can block briefly for the next fresh one.
    """

    def __init__(self, redis_client):
        self._r = redis_client

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def permission_granted(self) -> bool:
        raw = await self._run(self._r.hget, LOCATION_LAST_KEY, "permission")
        return _decode(raw) != "denied"

    async def last_known(self) -> Optional[LocationFix]:
        raw = await self._run(self._r.hgetall, LOCATION_LAST_KEY)
        if not raw:
            return None
        data = {_decode(k): _decode(v) for k, v in raw.items()}
        return fix_from_mapping(data, LAST_KNOWN)

    async def low_power_fix(self, wait_seconds: float) -> Optional[LocationFix]:
        block_ms = max(1, int(wait_seconds * 1000))
        msgs = await self._run(lambda: self._r.xread({LOCATION_STREAM: "$"}, count=1, block=block_ms))
        for _, records in msgs or []:
            for _id, fields in records:
                try:
                    data = json.loads(_decode(fields.get(b"data") or fields.get("data")))
                except (TypeError, ValueError):
                    continue
                fix = fix_from_mapping(data, LOW_POWER_FIX)
                if fix is not None:
                    return fix
        return None

    async def record_fix(self, payload: dict) -> None:
        """Store a device-reported fix (used by the HTTP layer)."""
        mapping = {
            "lat": payload["lat"],
            "lon": payload["lon"],
            "ts": payload.get("ts") or int(dt.datetime.now(dt.timezone.utc).timestamp() * 1000),
            "permission": payload.get("permission") or "granted",
        }
        address = payload.get("address")
        if isinstance(address, dict):
            address = short_address(address)
        if address:
            mapping["address"] = address
        if payload.get("accuracy_m") is not None:
            mapping["accuracy_m"] = payload["accuracy_m"]

        def _write():
            self._r.delete(LOCATION_LAST_KEY)
            self._r.hset(LOCATION_LAST_KEY, mapping=mapping)
            self._r.xadd(LOCATION_STREAM, {"data": json.dumps(mapping, ensure_ascii=False)},
                         maxlen=100, approximate=True)

        await self._run(_write)


def _decode(v):
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return v
