from __future__ import annotations

import math
from dataclasses import dataclass
from numbers import Real
from typing import Any, Mapping

from .stop import Stop

DEFAULT_KEY_PREFIX = "busLocations"

# Largest integer a JSON client can carry without losing precision.
MAX_TIMESTAMP_MS = 2**53


def broadcast_key(vehicle_id: str, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Return the broadcast key holding the latest report for a vehicle."""

    vid = (vehicle_id or "").strip()
    if not vid:
        raise ValueError("vehicle_id must be a non-empty string")
    return f"{prefix.rstrip('/')}/{vid}"


@dataclass(frozen=True, slots=True)
class PositionReport:
    """Latest known position of a vehicle, as published by its driver.

    Superseded by the next report for the same vehicle (last write wins).
    """

    lat: float
    lon: float
    observed_at_ms: int

    def to_record(self) -> dict[str, Any]:
        return {"lat": self.lat, "lng": self.lon, "timestamp": self.observed_at_ms}


def _finite_number(value: Any) -> bool:
    # bool is an int subclass; a True/False "coordinate" is corrupt data.
    if isinstance(value, bool) or not isinstance(value, Real):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # Integers too large for a float.
        return False


def parse_position_record(payload: Any) -> PositionReport | None:
    """Parse a record read from the broadcast service.

    Anything that is not a mapping with finite ``lat``, ``lng`` and
    ``timestamp`` numbers (coordinates in range, timestamp between 0 and
    ``MAX_TIMESTAMP_MS``) is treated as no data.
    """

    if not isinstance(payload, Mapping):
        return None

    lat = payload.get("lat")
    lng = payload.get("lng")
    ts = payload.get("timestamp")
    if not (_finite_number(lat) and _finite_number(lng) and _finite_number(ts)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    if not (0 <= ts <= MAX_TIMESTAMP_MS):
        return None

    return PositionReport(lat=float(lat), lon=float(lng), observed_at_ms=int(ts))


@dataclass(frozen=True, slots=True)
class TrackingView:
    """State derived for a subscriber from the last received report."""

    vehicle_id: str | None
    last_report: PositionReport | None = None
    online: bool = False
    active_stop: Stop | None = None

    @staticmethod
    def empty(vehicle_id: str | None = None) -> "TrackingView":
        return TrackingView(vehicle_id=vehicle_id)
