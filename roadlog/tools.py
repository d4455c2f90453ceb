"""
Tool-style handlers for the rest of the app.

Each handler takes a loosely-typed argument mapping, validates it against a request
model, and answers {"ok": True, ...} or {"ok": False, "error": ...}; they never
raise for bad input.
"""
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from roadlog.events import EventKind
from roadlog.location import acquire_best_effort
from roadlog.logging_config import get_logger
from roadlog.schemas import (
    DeleteNamedPlaceRequest,
    EventIdRequest,
    ListRequest,
    SaveNamedPlaceRequest,
    SettingsUpdate,
    UpdateLabelRequest,
)

logger = get_logger("tools", "tools.log")

TRIP_KINDS = (EventKind.START, EventKind.PARK)


def _fail(error: str) -> dict:
    return {"ok": False, "error": error}


def _parse(model: type[BaseModel], args: Any):
    """(request, None) or (None, error message)."""
    if args is None:
        args = {}
    if not isinstance(args, dict):
        return None, "Invalid arguments"
    try:
        return model.model_validate(args), None
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "arguments"
        if first.get("type") == "missing":
            return None, f"{field} is required"
        return None, f"{field}: {first.get('msg')}"


class TripTools:
    def __init__(self, store, catalog, monitor=None, geocoder=None, location_provider=None):
        self._store = store
        self._catalog = catalog
        self._monitor = monitor
        self._geocoder = geocoder
        self._location_provider = location_provider

    async def get_driving_log(self, args: Any = None) -> dict:
        req, err = _parse(ListRequest, args)
        if err:
            return _fail(err)
        events = await self._store.list_recent(TRIP_KINDS, req.limit)
        items = [e.to_item() for e in events]
        return {"ok": True, "items": items, "count": len(items)}

    async def get_place_visits(self, args: Any = None) -> dict:
        req, err = _parse(ListRequest, args)
        if err:
            return _fail(err)
        events = await self._store.list_recent((EventKind.VISIT,), req.limit)
        items = [e.to_item() for e in events]
        return {"ok": True, "items": items, "count": len(items)}

    async def get_current_visit(self, args: Any = None) -> dict:
        ongoing = self._monitor.current_visit if self._monitor is not None else None
        return {"ok": True, "visit": ongoing.to_dict() if ongoing else None}

    async def save_named_place(self, args: Any = None, location=None) -> dict:
        """Save a place at the given lat/lon, or at the current location when omitted."""
        req, err = _parse(SaveNamedPlaceRequest, args)
        if err:
            return _fail(err)

        lat, lon = req.lat, req.lon
        if lat is None or lon is None:
            if location is None:
                location = await acquire_best_effort(self._location_provider)
            if not location.ok:
                return _fail("Location not available")
            lat, lon = location.lat, location.lon
            if lat is None or lon is None:
                return _fail("GPS coordinates not available")

        await self._catalog.save(req.label, lat, lon, req.radius_m)
        return {
            "ok": True,
            "label": req.label,
            "lat": lat,
            "lon": lon,
            "radius_m": req.radius_m,
            "message": f"Saved \"{req.label}\" at your current location",
        }

    async def delete_named_place(self, args: Any = None) -> dict:
        req, err = _parse(DeleteNamedPlaceRequest, args)
        if err:
            return _fail(err)
        removed = await self._catalog.delete(req.label.strip())
        return {"ok": True, "removed": removed}

    async def list_named_places(self, args: Any = None) -> dict:
        await self._catalog.load()
        items = [{"label": p.label, "lat": p.lat, "lon": p.lon, "radius_m": p.radius_m}
                 for p in self._catalog.places]
        return {"ok": True, "items": items, "count": len(items)}

    async def get_settings(self, args: Any = None) -> dict:
        await self._catalog.load()
        return {
            "ok": True,
            "visit_threshold_minutes": self._catalog.visit_threshold_minutes,
            "poi_lookup_enabled": self._catalog.poi_lookup_enabled,
        }

    async def update_settings(self, args: Any = None) -> dict:
        req, err = _parse(SettingsUpdate, args)
        if err:
            return _fail(err)
        await self._catalog.load()
        if req.visit_threshold_minutes is not None:
            await self._catalog.set_visit_threshold_minutes(req.visit_threshold_minutes)
        if req.poi_lookup_enabled is not None:
            await self._catalog.set_poi_lookup_enabled(req.poi_lookup_enabled)
        return await self.get_settings()

    async def update_event_label(self, args: Any = None) -> dict:
        req, err = _parse(UpdateLabelRequest, args)
        if err:
            return _fail(err)
        updated = await self._store.update_label(req.id, req.label)
        return {"ok": True, "updated": updated}

    async def delete_event(self, args: Any = None) -> dict:
        req, err = _parse(EventIdRequest, args)
        if err:
            return _fail(err)
        removed = await self._store.delete(req.id)
        return {"ok": True, "removed": removed}

    async def clear_log(self, args: Any = None) -> dict:
        count = await self._store.clear()
        return {"ok": True, "removed": count}

    async def migrate_events(self, args: Any = None, min_interval_seconds: Optional[float] = None) -> dict:
        if self._geocoder is None:
            return _fail("Reverse geocoding is not configured")
        kwargs = {}
        if min_interval_seconds is not None:
            kwargs["min_interval_seconds"] = min_interval_seconds
        await self._catalog.load()
        result = await self._store.migrate(self._geocoder, self._catalog, **kwargs)
        return {"ok": True, **result.to_dict()}
