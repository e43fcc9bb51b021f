from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.app.ports.output import IRouteRepository
from src.domain.models import BusRoute, GeoPoint, Stop


def _parse_route(raw: dict[str, Any]) -> BusRoute:
    vehicle_id = str(raw.get("vehicle_id") or "").strip()
    if not vehicle_id:
        raise ValueError("Route entry without vehicle_id")

    stops: list[Stop] = []
    for s in raw.get("stops") or []:
        stops.append(
            Stop(
                id=str(s["id"]),
                name=str(s.get("name") or s["id"]),
                location=GeoPoint(lat=float(s["lat"]), lon=float(s["lon"])),
            )
        )

    return BusRoute(
        vehicle_id=vehicle_id,
        name=str(raw.get("name") or vehicle_id),
        stops=tuple(stops),
    )


@dataclass(slots=True)
class JsonRouteRepository(IRouteRepository):
    """Loads the static route configuration from a JSON file.

    The file is read once; routes are read-only afterwards.

    Env vars:
      - ROUTES_PATH: path to the JSON file (default data/routes.json)
    """

    path: str | Path | None = None
    _routes: dict[str, BusRoute] | None = field(default=None, init=False, repr=False)

    def _path(self) -> Path:
        value = self.path or os.getenv("ROUTES_PATH") or "data/routes.json"
        return Path(value)

    def _load(self) -> dict[str, BusRoute]:
        if self._routes is not None:
            return self._routes

        with self._path().open("r", encoding="utf-8") as fp:
            payload = json.load(fp)

        routes: dict[str, BusRoute] = {}
        for raw in payload.get("routes", []):
            route = _parse_route(raw)
            if route.vehicle_id in routes:
                raise ValueError(f"Duplicate route for vehicle {route.vehicle_id!r}")
            routes[route.vehicle_id] = route

        self._routes = routes
        return routes

    def get_route(self, vehicle_id: str) -> BusRoute | None:
        return self._load().get(vehicle_id)

    def list_routes(self) -> tuple[BusRoute, ...]:
        routes = list(self._load().values())
        routes.sort(key=lambda r: r.vehicle_id)
        return tuple(routes)
