from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from src.adapters.broadcast.in_memory_broadcast_service import InMemoryBroadcastHub
from src.adapters.persistence.json_route_repository import JsonRouteRepository
from src.app.config import TrackingSettings
from src.app.ports.output import IRouteRepository
from src.app.services.tracking_query_service import TrackingQueryService


@lru_cache(maxsize=1)
def get_settings() -> TrackingSettings:
    return TrackingSettings.from_env()


@lru_cache(maxsize=1)
def get_broadcast_hub() -> InMemoryBroadcastHub:
    # The API process is itself the realtime broadcast service.
    return InMemoryBroadcastHub()


@lru_cache(maxsize=1)
def get_route_repository() -> IRouteRepository:
    return JsonRouteRepository()


def get_tracking_query_service(
    hub: InMemoryBroadcastHub = Depends(get_broadcast_hub),
    route_repository: IRouteRepository = Depends(get_route_repository),
    settings: TrackingSettings = Depends(get_settings),
) -> TrackingQueryService:
    return TrackingQueryService(
        broadcast_service=hub.connect(),
        route_repository=route_repository,
        settings=settings,
    )
