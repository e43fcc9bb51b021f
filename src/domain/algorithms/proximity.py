from __future__ import annotations

from typing import Sequence

from src.domain.algorithms.geo_utils import haversine_distance_m
from src.domain.models import GeoPoint, Stop

DEFAULT_ACTIVE_STOP_THRESHOLD_M = 500.0


def nearest_stop_with_distance(
    position: GeoPoint | None,
    stops: Sequence[Stop],
    threshold_m: float = DEFAULT_ACTIVE_STOP_THRESHOLD_M,
) -> tuple[Stop, float] | None:
    if position is None or not stops:
        return None

    best: Stop | None = None
    best_d = float("inf")
    for stop in stops:
        d = haversine_distance_m(position, stop.location)
        # Strict comparison: on exact ties the first stop in route order wins.
        if d < best_d:
            best_d = d
            best = stop

    if best is None or best_d > threshold_m:
        return None
    return best, best_d


def nearest_stop(
    position: GeoPoint | None,
    stops: Sequence[Stop],
    threshold_m: float = DEFAULT_ACTIVE_STOP_THRESHOLD_M,
) -> Stop | None:
    """Return the closest stop within ``threshold_m`` of ``position``, if any."""

    found = nearest_stop_with_distance(position, stops, threshold_m)
    return found[0] if found else None
