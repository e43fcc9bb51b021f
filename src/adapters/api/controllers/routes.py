from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from src.adapters.api.dependencies import get_tracking_query_service
from src.adapters.api.schemas.tracking import (
    GeoPointSchema,
    RouteSchema,
    RouteSummarySchema,
    StopSchema,
)
from src.app.services.tracking_query_service import TrackingQueryService

router = APIRouter(prefix="/routes", tags=["routes"])


@router.get("", response_model=list[RouteSummarySchema])
def list_routes(
    service: TrackingQueryService = Depends(get_tracking_query_service),
) -> list[RouteSummarySchema]:
    return [
        RouteSummarySchema(vehicle_id=r.vehicle_id, name=r.name, stop_count=len(r.stops))
        for r in service.list_routes()
    ]


@router.get("/{vehicle_id}", response_model=RouteSchema)
def get_route(
    vehicle_id: str,
    service: TrackingQueryService = Depends(get_tracking_query_service),
) -> RouteSchema:
    route = service.get_route(vehicle_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return RouteSchema(
        vehicle_id=route.vehicle_id,
        name=route.name,
        stops=[
            StopSchema(
                stop_id=s.id,
                name=s.name,
                location=GeoPointSchema(lat=s.location.lat, lon=s.location.lon),
            )
            for s in route.stops
        ],
    )
