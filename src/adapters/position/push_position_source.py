from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field

from src.app.ports.output import IPositionSource, PositionFix, WatchHandle, WatchOptions
from src.app.ports.output.position_source import OnFix, OnPositionError
from src.domain.exceptions.tracking import PositionSourceError
from src.domain.models import ErrorKind


@dataclass(slots=True, eq=False)
class _Watch:
    on_fix: OnFix
    on_error: OnPositionError
    options: WatchOptions
    timer: asyncio.TimerHandle | None = None


@dataclass(slots=True)
class PushPositionSource(IPositionSource):
    """Position source fed by an external producer (e.g. a driver's socket).

    Mirrors a device watch: if no fix arrives within ``timeout_ms`` a
    ``timeout`` error is delivered and the timer re-arms. Fixes are never
    cached: a watch only sees fixes pushed after it was opened, so
    ``maximum_age_ms=0`` always holds and ``high_accuracy`` is ignored.
    """

    _watches: dict[int, _Watch] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    @property
    def active(self) -> bool:
        return bool(self._watches)

    def watch(
        self, on_fix: OnFix, on_error: OnPositionError, options: WatchOptions
    ) -> WatchHandle:
        watch_id = next(self._ids)
        self._watches[watch_id] = _Watch(on_fix=on_fix, on_error=on_error, options=options)
        self._arm(watch_id)
        return WatchHandle(watch_id=watch_id)

    def clear_watch(self, handle: WatchHandle) -> None:
        w = self._watches.pop(handle.watch_id, None)
        if w is not None and w.timer is not None:
            w.timer.cancel()

    def push_fix(self, fix: PositionFix) -> None:
        for watch_id, w in list(self._watches.items()):
            if watch_id not in self._watches:
                continue
            self._arm(watch_id)
            w.on_fix(fix)

    def push_error(self, error: PositionSourceError) -> None:
        for watch_id, w in list(self._watches.items()):
            if watch_id in self._watches:
                w.on_error(error)

    def _arm(self, watch_id: int) -> None:
        w = self._watches.get(watch_id)
        if w is None:
            return
        if w.timer is not None:
            w.timer.cancel()
            w.timer = None
        if w.options.timeout_ms > 0:
            w.timer = asyncio.get_running_loop().call_later(
                w.options.timeout_ms / 1000.0, self._on_timeout, watch_id
            )

    def _on_timeout(self, watch_id: int) -> None:
        w = self._watches.get(watch_id)
        if w is None:
            return
        w.timer = None
        self._arm(watch_id)
        w.on_error(
            PositionSourceError(ErrorKind.TIMEOUT, "Location request timed out.")
        )
