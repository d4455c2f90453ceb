"""
Trip event records and their JSON form.
"""
import datetime as dt
import enum
import json
import uuid
from dataclasses import dataclass, replace
from typing import Optional

from roadlog.crud import to_dt


UTC = dt.timezone.utc


class EventKind(str, enum.Enum):
    START = "start"
    PARK = "park"
    VISIT = "visit"


@dataclass(frozen=True)
class TripEvent:
    """
    One row of the driving log: a start, a park, or a visit (dwell interval).

    timestamp is the detected instant for start/park and the arrival for a visit;
    end_timestamp is set only for visits (departure).
    """
    id: str
    kind: EventKind
    timestamp: dt.datetime
    end_timestamp: Optional[dt.datetime] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    address: Optional[str] = None
    label: Optional[str] = None

    def __post_init__(self):
        if self.kind == EventKind.VISIT:
            if self.end_timestamp is None:
                raise ValueError("visit requires end_timestamp")
            if self.end_timestamp < self.timestamp:
                raise ValueError("visit end_timestamp precedes timestamp")

    @property
    def effective_timestamp(self) -> dt.datetime:
        if self.kind == EventKind.VISIT and self.end_timestamp is not None:
            return self.end_timestamp
        return self.timestamp

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.kind != EventKind.VISIT or self.end_timestamp is None:
            return None
        return int((self.end_timestamp - self.timestamp).total_seconds() // 60)

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lon is not None

    def with_changes(self, **changes) -> "TripEvent":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "type": self.kind.value,
            "timestamp": _iso(self.timestamp),
        }
        if self.end_timestamp is not None:
            out["endTimestamp"] = _iso(self.end_timestamp)
        if self.lat is not None:
            out["lat"] = self.lat
        if self.lon is not None:
            out["lon"] = self.lon
        if self.address is not None:
            out["address"] = self.address
        if self.label is not None:
            out["label"] = self.label
        return out

    def to_item(self) -> dict:
        """Record as returned by the query tools (adds durationMinutes for visits)."""
        out = self.to_dict()
        if self.kind == EventKind.VISIT:
            out["durationMinutes"] = self.duration_minutes
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "TripEvent":
        event_id = data.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ValueError("record without id")
        kind = EventKind(str(data.get("type") or "start"))
        ts = to_dt(data.get("timestamp"))
        if ts is None:
            raise ValueError(f"record {event_id} has no timestamp")
        end = to_dt(data["endTimestamp"]) if data.get("endTimestamp") else None
        return cls(
            id=event_id,
            kind=kind,
            timestamp=ts.astimezone(UTC),
            end_timestamp=end.astimezone(UTC) if end else None,
            lat=_opt_float(data.get("lat")),
            lon=_opt_float(data.get("lon")),
            address=data.get("address"),
            label=data.get("label"),
        )


def new_event_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def sort_key(event: TripEvent) -> dt.datetime:
    return event.effective_timestamp


def dumps_events(events) -> str:
    return json.dumps([e.to_dict() for e in events], ensure_ascii=False)


def loads_events(raw: str) -> list:
    """
    Decode a stored JSON array. Raises ValueError when the payload is not an array;
    individual bad records are dropped.
    """
    decoded = json.loads(raw)
    if not isinstance(decoded, list):
        raise ValueError("stored events are not a JSON array")
    out = []
    for item in decoded:
        if not isinstance(item, dict):
            continue
        try:
            out.append(TripEvent.from_dict(item))
        except (ValueError, TypeError, KeyError):
            continue
    return out


def _iso(ts: dt.datetime) -> str:
    return ts.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _opt_float(v):
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None
