from __future__ import annotations

import asyncio
import csv
import itertools
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from src.app.ports.output import IPositionSource, PositionFix, WatchHandle, WatchOptions
from src.app.ports.output.position_source import OnFix, OnPositionError
from src.domain.exceptions.tracking import PositionSourceError
from src.domain.models import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReplayPositionSource(IPositionSource):
    """Replays a recorded track as if it came from a GPS receiver.

    Track file: CSV with ``lat``, ``lon`` and optional ``offset_s`` (seconds
    since the first fix). Without ``offset_s``, fixes are ``interval_s`` apart.
    Each watch replays the track from its start and never reuses a fix, so
    ``maximum_age_ms=0`` always holds; ``high_accuracy`` is ignored.

    Env vars:
      - TRACK_PATH: path to the CSV track
      - REPLAY_INTERVAL_S (default 1.0)
      - REPLAY_SPEED: time scale, 2.0 replays twice as fast (default 1.0)
    """

    path: str | Path | None = None
    interval_s: float | None = None
    speed: float | None = None

    _tasks: dict[int, asyncio.Task[None]] = field(
        default_factory=dict, init=False, repr=False
    )
    _ids: itertools.count = field(
        default_factory=lambda: itertools.count(1), init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.interval_s is None:
            self.interval_s = float(os.getenv("REPLAY_INTERVAL_S", "1.0"))
        if self.speed is None:
            self.speed = float(os.getenv("REPLAY_SPEED", "1.0"))

    def _path(self) -> Path:
        value = self.path or os.getenv("TRACK_PATH") or "data/tracks/bus1.csv"
        return Path(value)

    def load_track(self) -> tuple[tuple[float, PositionFix], ...]:
        out: list[tuple[float, PositionFix]] = []
        with self._path().open("r", encoding="utf-8", newline="") as fp:
            reader = csv.DictReader(fp)
            for i, row in enumerate(reader):
                lat_raw = (row.get("lat") or "").strip()
                lon_raw = (row.get("lon") or "").strip()
                if not lat_raw or not lon_raw:
                    continue
                offset_raw = (row.get("offset_s") or "").strip()
                offset_s = (
                    float(offset_raw)
                    if offset_raw
                    else i * float(self.interval_s or 0.0)
                )
                out.append(
                    (offset_s, PositionFix(lat=float(lat_raw), lon=float(lon_raw)))
                )
        out.sort(key=lambda x: x[0])
        return tuple(out)

    def watch(
        self, on_fix: OnFix, on_error: OnPositionError, options: WatchOptions
    ) -> WatchHandle:
        watch_id = next(self._ids)
        task = asyncio.get_running_loop().create_task(
            self._replay(on_fix, on_error, options)
        )
        self._tasks[watch_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(watch_id, None))
        return WatchHandle(watch_id=watch_id)

    def clear_watch(self, handle: WatchHandle) -> None:
        task = self._tasks.pop(handle.watch_id, None)
        if task is not None:
            task.cancel()

    async def wait_finished(self) -> None:
        """Wait until every running replay reaches the end of its track."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _replay(
        self, on_fix: OnFix, on_error: OnPositionError, options: WatchOptions
    ) -> None:
        try:
            track = self.load_track()
        except (OSError, ValueError) as exc:
            logger.warning("Cannot read track %s: %s", self._path(), exc)
            on_error(
                PositionSourceError(
                    ErrorKind.POSITION_UNAVAILABLE, f"Cannot read track: {exc}"
                )
            )
            return

        speed = float(self.speed or 1.0)
        timeout_s = options.timeout_ms / 1000.0 if options.timeout_ms > 0 else None
        elapsed_s = 0.0
        for offset_s, fix in track:
            wait_s = max(0.0, (offset_s - elapsed_s) / speed)
            # Gaps longer than the fix timeout surface as timeouts, like a receiver.
            while timeout_s is not None and wait_s > timeout_s:
                await asyncio.sleep(timeout_s)
                wait_s -= timeout_s
                on_error(
                    PositionSourceError(ErrorKind.TIMEOUT, "Location request timed out.")
                )
            await asyncio.sleep(wait_s)
            elapsed_s = offset_s
            on_fix(fix)
