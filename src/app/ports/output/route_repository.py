from __future__ import annotations

from abc import ABC, abstractmethod

from src.domain.models import BusRoute


class IRouteRepository(ABC):
    """Port for the static route/stop configuration."""

    @abstractmethod
    def get_route(self, vehicle_id: str) -> BusRoute | None:
        raise NotImplementedError

    @abstractmethod
    def list_routes(self) -> tuple[BusRoute, ...]:
        raise NotImplementedError
