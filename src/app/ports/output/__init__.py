from .broadcast_service import (
    BroadcastServiceError,
    CleanupAction,
    IBroadcastService,
    IDisconnectRegistration,
    ISubscriptionHandle,
)
from .position_source import IPositionSource, PositionFix, WatchHandle, WatchOptions
from .route_repository import IRouteRepository

__all__ = [
    "BroadcastServiceError",
    "CleanupAction",
    "IBroadcastService",
    "IDisconnectRegistration",
    "ISubscriptionHandle",
    "IPositionSource",
    "PositionFix",
    "WatchHandle",
    "WatchOptions",
    "IRouteRepository",
]
