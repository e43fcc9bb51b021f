from __future__ import annotations

from pydantic import BaseModel, Field

from src.domain.models.realtime import MAX_TIMESTAMP_MS


class GeoPointSchema(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)


class StopSchema(BaseModel):
    stop_id: str
    name: str
    location: GeoPointSchema


class RouteSummarySchema(BaseModel):
    vehicle_id: str
    name: str
    stop_count: int


class RouteSchema(BaseModel):
    vehicle_id: str
    name: str
    stops: list[StopSchema]


class LocationRecordSchema(BaseModel):
    """Wire record stored at a broadcast key."""

    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    timestamp: int | None = Field(default=None, ge=0, le=MAX_TIMESTAMP_MS)


class PositionReportSchema(BaseModel):
    lat: float
    lng: float
    timestamp: int


class ActiveStopSchema(StopSchema):
    distance_m: float | None = None


class TrackingViewSchema(BaseModel):
    vehicle_id: str | None = None
    online: bool = False
    last_report: PositionReportSchema | None = None
    active_stop: ActiveStopSchema | None = None


class BroadcastStatusSchema(BaseModel):
    state: str
    vehicle_id: str | None = None
    message: str
    error: str | None = None
    last_report: PositionReportSchema | None = None
