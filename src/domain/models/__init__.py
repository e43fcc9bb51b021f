from .geo import GeoPoint
from .realtime import PositionReport, TrackingView, broadcast_key
from .route import BusRoute
from .session import BroadcastState, BroadcastStatus, ErrorKind
from .stop import Stop

__all__ = [
    "GeoPoint",
    "PositionReport",
    "TrackingView",
    "broadcast_key",
    "BusRoute",
    "BroadcastState",
    "BroadcastStatus",
    "ErrorKind",
    "Stop",
]
