from fastapi import APIRouter, HTTPException, Request

from roadlog.logging_config import get_logger
from roadlog.schemas import ActivityIn, LabelIn, LocationIn, SaveNamedPlaceRequest, SettingsUpdate
from roadlog.worker import publish_reading

router = APIRouter()
logger = get_logger("webhook", "webhook.log")


def _services(request: Request):
    return request.app.state.services


def _checked(result: dict) -> dict:
    if not result.get("ok"):
        raise HTTPException(status_code=400, detail=result.get("error"))
    return result


# ---------------------------------------------------
#                DEVICE INPUT
# ---------------------------------------------------
@router.post("/activity")
async def activity_hook(payload: ActivityIn, request: Request):
    s = _services(request)
    await publish_reading(s.redis, payload.model_dump(exclude_none=True))
    logger.info(f"Activity reading queued: {payload.type} confidence={payload.confidence}")
    return {"ok": True}


@router.post("/location")
async def location_hook(payload: LocationIn, request: Request):
    s = _services(request)
    await s.location_provider.record_fix(payload.model_dump(exclude_none=True))
    return {"ok": True}


# ---------------------------------------------------
#                QUERIES
# ---------------------------------------------------
@router.get("/driving-log")
async def driving_log(request: Request, limit: int = 10):
    return _checked(await _services(request).tools.get_driving_log({"limit": limit}))


@router.get("/place-visits")
async def place_visits(request: Request, limit: int = 10):
    return _checked(await _services(request).tools.get_place_visits({"limit": limit}))


@router.get("/current-visit")
async def current_visit(request: Request):
    return await _services(request).tools.get_current_visit()


# ---------------------------------------------------
#                NAMED PLACES / SETTINGS
# ---------------------------------------------------
@router.get("/places")
async def list_places(request: Request):
    return await _services(request).tools.list_named_places()


@router.post("/places")
async def save_place(payload: SaveNamedPlaceRequest, request: Request):
    return _checked(await _services(request).tools.save_named_place(payload.model_dump(exclude_none=True)))


@router.delete("/places/{label}")
async def delete_place(label: str, request: Request):
    return _checked(await _services(request).tools.delete_named_place({"label": label}))


@router.get("/settings")
async def get_settings(request: Request):
    return await _services(request).tools.get_settings()


@router.put("/settings")
async def put_settings(payload: SettingsUpdate, request: Request):
    return _checked(await _services(request).tools.update_settings(payload.model_dump(exclude_none=True)))


# ---------------------------------------------------
#                EVENT LOG EDITING
# ---------------------------------------------------
@router.patch("/events/{event_id}/label")
async def update_label(event_id: str, payload: LabelIn, request: Request):
    result = _checked(await _services(request).tools.update_event_label({"id": event_id, "label": payload.label}))
    if not result["updated"]:
        raise HTTPException(status_code=404, detail="Visit not found")
    return result


@router.delete("/events/{event_id}")
async def delete_event(event_id: str, request: Request):
    return _checked(await _services(request).tools.delete_event({"id": event_id}))


@router.delete("/events")
async def clear_events(request: Request):
    return await _services(request).tools.clear_log()


@router.post("/events/migrate")
async def migrate_events(request: Request):
    return _checked(await _services(request).tools.migrate_events())


# ---------------------------------------------------
#                MANUAL TRIGGERS
# ---------------------------------------------------
@router.post("/simulate/start")
async def simulate_start(request: Request):
    event = await _services(request).monitor.simulate_trip_start()
    return {"ok": event is not None, "event": event.to_item() if event else None}


@router.post("/simulate/park")
async def simulate_park(request: Request):
    event = await _services(request).monitor.simulate_parked()
    return {"ok": event is not None, "event": event.to_item() if event else None}
