from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .realtime import PositionReport


class BroadcastState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    SHARING = "sharing"
    STOPPING = "stopping"


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    # Got a location but could not publish (or remove) it.
    SYNC_FAILURE = "sync_failure"

    @property
    def is_gps_failure(self) -> bool:
        return self is not ErrorKind.SYNC_FAILURE


@dataclass(frozen=True, slots=True)
class BroadcastStatus:
    state: BroadcastState = BroadcastState.IDLE
    vehicle_id: str | None = None
    message: str = "Idle"
    error: ErrorKind | None = None
    last_report: PositionReport | None = None
