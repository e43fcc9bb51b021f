from __future__ import annotations

from dataclasses import dataclass, field

from src.app.config import TrackingSettings
from src.app.ports.output import IBroadcastService, IRouteRepository
from src.app.services.broadcast_session import Clock, now_ms
from src.app.services.subscription_session import derive_tracking_view
from src.domain.algorithms.geo_utils import haversine_distance_m
from src.domain.exceptions.tracking import InvalidVehicleId
from src.domain.models import (
    BusRoute,
    GeoPoint,
    PositionReport,
    TrackingView,
    broadcast_key,
)
from src.domain.models.realtime import parse_position_record


@dataclass(slots=True)
class TrackingQueryService:
    """Snapshot reads and one-shot writes behind the HTTP API.

    - Lists routes and their stops from the static configuration.
    - Publishes or clears a vehicle's location without a long-lived session.
    - Derives the current tracking view (liveness, active stop) on demand.
    """

    broadcast_service: IBroadcastService
    route_repository: IRouteRepository
    settings: TrackingSettings = field(default_factory=TrackingSettings)
    clock: Clock = now_ms

    def _key(self, vehicle_id: str) -> str:
        try:
            return broadcast_key(vehicle_id, self.settings.key_prefix)
        except ValueError as exc:
            raise InvalidVehicleId(str(exc)) from exc

    def list_routes(self) -> tuple[BusRoute, ...]:
        return self.route_repository.list_routes()

    def get_route(self, vehicle_id: str) -> BusRoute | None:
        return self.route_repository.get_route(vehicle_id)

    async def publish(
        self,
        vehicle_id: str,
        *,
        lat: float,
        lon: float,
        observed_at_ms: int | None = None,
    ) -> PositionReport:
        point = GeoPoint(lat=lat, lon=lon)
        report = PositionReport(
            lat=point.lat,
            lon=point.lon,
            observed_at_ms=observed_at_ms if observed_at_ms is not None else self.clock(),
        )
        await self.broadcast_service.put(self._key(vehicle_id), report.to_record())
        return report

    async def clear(self, vehicle_id: str) -> None:
        await self.broadcast_service.delete(self._key(vehicle_id))

    async def current_view(self, vehicle_id: str) -> tuple[TrackingView, float | None]:
        """Return the derived view and the distance to its active stop, if any."""

        payload = await self.broadcast_service.get(self._key(vehicle_id))
        report = parse_position_record(payload)
        view = derive_tracking_view(
            vehicle_id,
            report,
            self.route_repository.get_route(vehicle_id),
            self.settings,
            self.clock(),
        )

        distance_m = None
        if view.active_stop is not None and report is not None:
            distance_m = haversine_distance_m(
                GeoPoint(lat=report.lat, lon=report.lon), view.active_stop.location
            )
        return view, distance_m
