from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from src.domain.exceptions.tracking import PositionSourceError


@dataclass(frozen=True, slots=True)
class PositionFix:
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class WatchOptions:
    """Device watch options.

    ``timeout_ms`` is honoured by every source. ``high_accuracy`` and
    ``maximum_age_ms`` are hints for hardware-backed sources; sources that
    only deliver fixes as they are produced already satisfy
    ``maximum_age_ms=0``.
    """

    high_accuracy: bool = True
    timeout_ms: int = 10_000
    # 0 means never hand out a cached (stale) fix.
    maximum_age_ms: int = 0


@dataclass(frozen=True, slots=True)
class WatchHandle:
    watch_id: int


OnFix = Callable[[PositionFix], None]
OnPositionError = Callable[[PositionSourceError], None]


class IPositionSource(ABC):
    """Port for the device position source (GPS, replayed track, ...)."""

    @abstractmethod
    def watch(
        self, on_fix: OnFix, on_error: OnPositionError, options: WatchOptions
    ) -> WatchHandle:
        raise NotImplementedError

    @abstractmethod
    def clear_watch(self, handle: WatchHandle) -> None:
        """Stop a watch; no fix or error may be delivered once this returns."""
