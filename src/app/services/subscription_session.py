from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping

from src.app.config import TrackingSettings
from src.app.ports.output import (
    BroadcastServiceError,
    IBroadcastService,
    IRouteRepository,
    ISubscriptionHandle,
)
from src.app.services.broadcast_session import Clock, now_ms
from src.domain.algorithms.liveness import is_online
from src.domain.algorithms.proximity import nearest_stop
from src.domain.exceptions.tracking import (
    BroadcastSyncError,
    InvalidVehicleId,
    SessionStateError,
)
from src.domain.models import (
    BusRoute,
    GeoPoint,
    PositionReport,
    TrackingView,
    broadcast_key,
)
from src.domain.models.realtime import parse_position_record

logger = logging.getLogger(__name__)

ViewListener = Callable[[TrackingView], None]

_END = object()


def derive_tracking_view(
    vehicle_id: str,
    report: PositionReport | None,
    route: BusRoute | None,
    settings: TrackingSettings,
    now: int,
) -> TrackingView:
    """Liveness and active stop for the latest report of a vehicle."""

    if report is None:
        return TrackingView.empty(vehicle_id)

    stops = route.stops if route is not None else ()
    return TrackingView(
        vehicle_id=vehicle_id,
        last_report=report,
        online=is_online(report.observed_at_ms, now, settings.online_threshold_ms),
        active_stop=nearest_stop(
            GeoPoint(lat=report.lat, lon=report.lon),
            stops,
            settings.active_stop_threshold_m,
        ),
    )


class ReportStream:
    """Reports received for one subscription, as an async iterator.

    Yields a ``PositionReport`` per valid update and ``None`` when the key
    holds no (or unusable) data. Ends once the subscription is closed and
    cannot be restarted. Keeps at most ``maxsize`` undelivered items,
    dropping the oldest.
    """

    __slots__ = ("vehicle_id", "_queue", "_closed")

    def __init__(self, vehicle_id: str, maxsize: int = 64) -> None:
        self.vehicle_id = vehicle_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: PositionReport | None) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Undelivered updates are discarded, not applied after close.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    def __aiter__(self) -> "ReportStream":
        return self

    async def __anext__(self) -> PositionReport | None:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item


@dataclass(slots=True)
class SubscriptionSession:
    """A subscriber's live view of one vehicle's broadcast.

    Holds nothing but the last report; ``view`` (online flag and active stop)
    is re-derived on every update and on a fixed liveness tick, so a
    publisher that goes silent is detected as offline without a new event.
    """

    broadcast_service: IBroadcastService
    route_repository: IRouteRepository | None = None
    settings: TrackingSettings = field(default_factory=TrackingSettings)
    clock: Clock = now_ms
    on_view: ViewListener | None = None

    _view: TrackingView = field(default_factory=TrackingView.empty, init=False)
    _route: BusRoute | None = field(default=None, init=False, repr=False)
    _handle: ISubscriptionHandle | None = field(default=None, init=False, repr=False)
    _stream: ReportStream | None = field(default=None, init=False, repr=False)
    _poll_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _generation: int = field(default=0, init=False, repr=False)

    @property
    def view(self) -> TrackingView:
        return self._view

    @property
    def vehicle_id(self) -> str | None:
        return self._stream.vehicle_id if self._stream is not None else None

    async def subscribe(self, vehicle_id: str) -> ReportStream:
        vid = (vehicle_id or "").strip()
        if not vid:
            raise InvalidVehicleId("vehicle_id must be a non-empty string")
        if self._stream is not None:
            raise SessionStateError(
                f"Already subscribed to {self._stream.vehicle_id!r}; "
                "use switch_vehicle() to track another vehicle"
            )

        key = broadcast_key(vid, self.settings.key_prefix)
        self._generation += 1
        generation = self._generation

        self._route = (
            self.route_repository.get_route(vid)
            if self.route_repository is not None
            else None
        )
        stream = ReportStream(vid)
        self._stream = stream
        self._set_view(TrackingView.empty(vid))

        def on_change(payload: Mapping[str, Any] | None) -> None:
            # Late deliveries for an old subscription are discarded.
            if generation != self._generation:
                return
            self._apply(stream, payload)

        try:
            handle = await self.broadcast_service.subscribe(key, on_change)
        except BroadcastServiceError as exc:
            logger.warning("Failed to subscribe to %s: %s", key, exc)
            self.unsubscribe()
            raise BroadcastSyncError(str(exc) or "subscribe failed") from exc

        if generation != self._generation:
            # unsubscribe() ran while the read was being opened.
            handle.cancel()
            return stream

        self._handle = handle
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_liveness(generation)
        )
        logger.debug("Subscribed to %s", key)
        return stream

    def unsubscribe(self) -> None:
        """Detach from the broadcast; idempotent, safe if never subscribed."""

        self._generation += 1

        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()

        stream, self._stream = self._stream, None
        if stream is not None:
            stream._close()
            self._route = None
            self._set_view(TrackingView.empty(stream.vehicle_id))

    async def switch_vehicle(self, vehicle_id: str) -> ReportStream:
        """Track another vehicle; no data of the previous one is ever shown for it."""

        vid = (vehicle_id or "").strip()
        if not vid:
            raise InvalidVehicleId("vehicle_id must be a non-empty string")

        self.unsubscribe()
        self._set_view(TrackingView.empty(vid))
        return await self.subscribe(vid)

    def evaluate_liveness(self) -> TrackingView:
        """Re-check ``online`` against the clock for the last report."""

        view = self._view
        if view.vehicle_id is None:
            return view

        last_ms = view.last_report.observed_at_ms if view.last_report else None
        online = is_online(last_ms, self.clock(), self.settings.online_threshold_ms)
        if online != view.online:
            self._set_view(replace(view, online=online))
        return self._view

    async def close(self) -> None:
        self.unsubscribe()

    async def __aenter__(self) -> "SubscriptionSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _apply(self, stream: ReportStream, payload: Mapping[str, Any] | None) -> None:
        report = parse_position_record(payload)
        if report is None and payload is not None:
            logger.debug(
                "Ignoring malformed location payload for %s", stream.vehicle_id
            )

        stream._push(report)
        self._set_view(
            derive_tracking_view(
                stream.vehicle_id, report, self._route, self.settings, self.clock()
            )
        )

    async def _poll_liveness(self, generation: int) -> None:
        interval_s = max(0.01, float(self.settings.liveness_poll_interval_s))
        while generation == self._generation:
            await asyncio.sleep(interval_s)
            if generation != self._generation:
                return
            self.evaluate_liveness()

    def _set_view(self, view: TrackingView) -> None:
        if view == self._view:
            return
        self._view = view
        if self.on_view is not None:
            self.on_view(view)
