from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.adapters.persistence.json_route_repository import JsonRouteRepository
from src.domain.models import BusRoute, GeoPoint, Stop


def _write(path: Path, routes: list[dict]) -> Path:
    path.write_text(json.dumps({"routes": routes}), encoding="utf-8")
    return path


def test_loads_routes_keyed_by_vehicle_in_stop_order(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "routes.json",
        [
            {
                "vehicle_id": "Bus2",
                "name": "Bus 2",
                "stops": [
                    {"id": "x", "name": "X", "lat": 1.0, "lon": 1.0},
                    {"id": "y", "lat": 2.0, "lon": 2.0},
                ],
            },
            {"vehicle_id": "Bus1", "stops": []},
        ],
    )
    repo = JsonRouteRepository(path=path)

    route = repo.get_route("Bus2")
    assert route is not None
    assert route.name == "Bus 2"
    assert [s.id for s in route.stops] == ["x", "y"]
    assert route.stops[1] == Stop(id="y", name="y", location=GeoPoint(lat=2.0, lon=2.0))
    assert repo.get_route("Bus3") is None
    assert [r.vehicle_id for r in repo.list_routes()] == ["Bus1", "Bus2"]


def test_routes_are_read_once(tmp_path: Path) -> None:
    path = _write(tmp_path / "routes.json", [{"vehicle_id": "Bus1", "stops": []}])
    repo = JsonRouteRepository(path=path)
    assert repo.get_route("Bus1") is not None

    path.unlink()
    assert repo.get_route("Bus1") is not None


def test_duplicate_stop_ids_are_rejected(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "routes.json",
        [
            {
                "vehicle_id": "Bus1",
                "stops": [
                    {"id": "a", "lat": 0.0, "lon": 0.0},
                    {"id": "a", "lat": 0.0, "lon": 0.1},
                ],
            }
        ],
    )
    with pytest.raises(ValueError):
        JsonRouteRepository(path=path).list_routes()


def test_env_var_selects_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path / "other.json", [{"vehicle_id": "Bus7", "stops": []}])
    monkeypatch.setenv("ROUTES_PATH", str(path))

    assert JsonRouteRepository().get_route("Bus7") == BusRoute(
        vehicle_id="Bus7", name="Bus7", stops=()
    )


def test_bundled_sample_routes_load() -> None:
    repo = JsonRouteRepository(path=Path(__file__).parents[2] / "data" / "routes.json")
    routes = repo.list_routes()
    assert routes
    assert all(r.stops for r in routes)
