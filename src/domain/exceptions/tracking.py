from __future__ import annotations

from src.domain.models.session import ErrorKind


class TrackingError(Exception):
    """Base exception for location tracking failures."""


class InvalidVehicleId(TrackingError, ValueError):
    """Raised when a session is given an empty vehicle id."""


class SessionStateError(TrackingError):
    """Raised when a session operation is not allowed in its current state."""


class BroadcastSyncError(TrackingError):
    """A location could not be published to (or removed from) the broadcast service."""

    kind = ErrorKind.SYNC_FAILURE


class PositionSourceError(TrackingError):
    """The device position source reported a failure."""

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind

    @property
    def is_fatal(self) -> bool:
        # Retrying a denied permission needs new user consent.
        return self.kind is ErrorKind.PERMISSION_DENIED
