from typing import Any

from pydantic import BaseModel, Field, field_validator

from roadlog.event_store import clamp_limit
from roadlog.variables import DEFAULT_PLACE_RADIUS_M, LIST_LIMIT_DEFAULT


class ListRequest(BaseModel):
    limit: int = LIST_LIMIT_DEFAULT

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> int:
        if v is None or isinstance(v, bool):
            return LIST_LIMIT_DEFAULT
        return clamp_limit(v)


class SaveNamedPlaceRequest(BaseModel):
    label: str = Field(min_length=1)
    radius_m: float = Field(default=DEFAULT_PLACE_RADIUS_M, gt=0)
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)

    @field_validator("label", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class DeleteNamedPlaceRequest(BaseModel):
    label: str = Field(min_length=1)


class UpdateLabelRequest(BaseModel):
    id: str = Field(min_length=1)
    label: str | None = None


class EventIdRequest(BaseModel):
    id: str = Field(min_length=1)


class SettingsUpdate(BaseModel):
    visit_threshold_minutes: int | None = Field(default=None, ge=0)
    poi_lookup_enabled: bool | None = None


class ActivityIn(BaseModel):
    type: str = Field(min_length=1)
    confidence: int = Field(ge=0, le=100)
    ts: int | str | None = None


class LocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    address: str | dict | None = None
    accuracy_m: float | None = None
    ts: int | None = None
    permission: str = "granted"


class LabelIn(BaseModel):
    label: str | None = None
