from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from src.app.config import TrackingSettings
from src.app.ports.output import (
    BroadcastServiceError,
    CleanupAction,
    IBroadcastService,
    IDisconnectRegistration,
    IPositionSource,
    PositionFix,
    WatchHandle,
    WatchOptions,
)
from src.domain.exceptions.tracking import (
    BroadcastSyncError,
    InvalidVehicleId,
    PositionSourceError,
    SessionStateError,
)
from src.domain.models import (
    BroadcastState,
    BroadcastStatus,
    ErrorKind,
    PositionReport,
    broadcast_key,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
StatusListener = Callable[[BroadcastStatus], None]

_ACTIVE_STATES = (BroadcastState.STARTING, BroadcastState.SHARING)

_POSITION_ERROR_MESSAGES = {
    ErrorKind.PERMISSION_DENIED: "Location permission denied.",
    ErrorKind.POSITION_UNAVAILABLE: "Position unavailable.",
    ErrorKind.TIMEOUT: "Location request timed out.",
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class BroadcastSession:
    """Publishes one vehicle's live position to the broadcast service.

    State machine: ``idle -> starting -> sharing -> stopping -> idle``.
    ``starting`` becomes ``sharing`` only after the first successful write.
    A disconnect cleanup (delete of the broadcast key) is registered before
    any write, so a publisher that vanishes without ``stop()`` leaves no
    stale location once the transport notices the drop.

    Failures never escape the callbacks; they are turned into ``status``
    values (``ErrorKind``) and pushed to ``on_status``.
    """

    broadcast_service: IBroadcastService
    position_source: IPositionSource
    settings: TrackingSettings = field(default_factory=TrackingSettings)
    clock: Clock = now_ms
    on_status: StatusListener | None = None

    _status: BroadcastStatus = field(
        default_factory=BroadcastStatus, init=False, repr=False
    )
    _key: str | None = field(default=None, init=False, repr=False)
    _watch: WatchHandle | None = field(default=None, init=False, repr=False)
    _cleanup: IDisconnectRegistration | None = field(
        default=None, init=False, repr=False
    )
    _write_lock: asyncio.Lock = field(
        default_factory=asyncio.Lock, init=False, repr=False
    )
    _writes: set[asyncio.Task[None]] = field(
        default_factory=set, init=False, repr=False
    )
    _teardown: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    # Bumped by every start and teardown; a start that sees it move was stopped.
    _epoch: int = field(default=0, init=False, repr=False)

    @property
    def status(self) -> BroadcastStatus:
        return self._status

    @property
    def state(self) -> BroadcastState:
        return self._status.state

    @property
    def cleanup_registration(self) -> IDisconnectRegistration | None:
        return self._cleanup

    async def start(self, vehicle_id: str) -> None:
        vid = (vehicle_id or "").strip()
        if not vid:
            raise InvalidVehicleId("vehicle_id must be a non-empty string")
        if self._status.state is not BroadcastState.IDLE:
            raise SessionStateError(
                f"Broadcast already {self._status.state.value} "
                f"for {self._status.vehicle_id!r}; stop it first"
            )

        key = broadcast_key(vid, self.settings.key_prefix)
        self._epoch += 1
        epoch = self._epoch
        self._key = key
        self._set_status(
            BroadcastStatus(
                state=BroadcastState.STARTING,
                vehicle_id=vid,
                message="Starting location sharing...",
            )
        )

        try:
            registration = await self.broadcast_service.register_disconnect_cleanup(
                key, CleanupAction.delete(key)
            )
        except BroadcastServiceError as exc:
            logger.warning("Disconnect cleanup registration failed for %s: %s", key, exc)
            if epoch != self._epoch:
                raise BroadcastSyncError(str(exc) or "registration failed") from exc
            self._key = None
            self._update_status(
                state=BroadcastState.IDLE,
                message="Failed to start sharing (sync error).",
                error=ErrorKind.SYNC_FAILURE,
            )
            raise BroadcastSyncError(str(exc) or "registration failed") from exc

        if epoch != self._epoch:
            # stop() ran while the cleanup was being registered.
            try:
                await registration.cancel()
            except BroadcastServiceError as exc:
                logger.warning("Failed to cancel disconnect cleanup: %s", exc)
            raise SessionStateError(f"Broadcast for {vid!r} was stopped while starting")
        self._cleanup = registration

        options = WatchOptions(
            high_accuracy=True,
            timeout_ms=self.settings.fix_timeout_ms,
            maximum_age_ms=0,
        )
        try:
            self._watch = self.position_source.watch(
                self._on_fix, self._on_position_error, options
            )
        except PositionSourceError as exc:
            self._on_position_error(exc)
            if self._teardown is None:
                self._begin_teardown(
                    message=_POSITION_ERROR_MESSAGES[exc.kind], error=exc.kind
                )
            await self._wait_teardown()
            raise

        logger.info("Started location sharing for %s", vid)

    async def stop(self) -> None:
        """Stop sharing and remove the broadcast key.

        Idempotent. The state always ends ``idle``; a failed delete is logged
        and reported as ``sync_failure`` but does not block the transition.
        """

        if self._teardown is None:
            if self._status.state is BroadcastState.IDLE:
                return
            vid = self._status.vehicle_id
            self._begin_teardown(message=f"Stopped sharing for {vid}", error=None)
        await self._wait_teardown()

    def detach(self) -> None:
        """Drop the session after its transport is gone.

        Cancels the watch and pending writes without touching the broadcast
        service; the registered disconnect cleanup removes the key.
        """

        self._epoch += 1
        self._cancel_watch()
        for task in list(self._writes):
            task.cancel()
        self._key = None
        self._cleanup = None
        self._update_status(
            state=BroadcastState.IDLE, message="Disconnected.", last_report=None
        )

    async def flush(self) -> None:
        """Wait until every queued location write has completed."""

        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def __aenter__(self) -> "BroadcastSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def _on_fix(self, fix: PositionFix) -> None:
        key = self._key
        if key is None or self._status.state not in _ACTIVE_STATES:
            return

        if not (math.isfinite(fix.lat) and math.isfinite(fix.lon)):
            self._on_position_error(
                PositionSourceError(ErrorKind.POSITION_UNAVAILABLE, "Non-finite fix")
            )
            return

        report = PositionReport(lat=fix.lat, lon=fix.lon, observed_at_ms=self.clock())
        task = asyncio.get_running_loop().create_task(self._publish(key, report))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _publish(self, key: str, report: PositionReport) -> None:
        # asyncio.Lock wakes waiters FIFO, so writes land in submission order.
        async with self._write_lock:
            try:
                await self.broadcast_service.put(key, report.to_record())
            except BroadcastServiceError as exc:
                logger.warning("Failed to write location to %s: %s", key, exc)
                if self._status.state in _ACTIVE_STATES:
                    self._update_status(
                        message="Failed to share location (write error).",
                        error=ErrorKind.SYNC_FAILURE,
                    )
                return

        if self._key != key or self._status.state not in _ACTIVE_STATES:
            return
        self._update_status(
            state=BroadcastState.SHARING,
            message=f"Sharing location for {self._status.vehicle_id}",
            error=None,
            last_report=report,
        )

    def _on_position_error(self, error: PositionSourceError) -> None:
        if self._status.state not in _ACTIVE_STATES:
            return

        message = _POSITION_ERROR_MESSAGES.get(error.kind, str(error))
        logger.warning("Position source error (%s): %s", error.kind.value, error)
        self._update_status(message=message, error=error.kind)

        if error.is_fatal:
            self._begin_teardown(message=message, error=error.kind)

    def _begin_teardown(self, *, message: str, error: ErrorKind | None) -> None:
        self._epoch += 1
        self._cancel_watch()
        self._update_status(state=BroadcastState.STOPPING)
        self._teardown = asyncio.get_running_loop().create_task(
            self._run_teardown(message=message, error=error)
        )

    async def _wait_teardown(self) -> None:
        task = self._teardown
        if task is not None:
            await asyncio.shield(task)

    async def _run_teardown(self, *, message: str, error: ErrorKind | None) -> None:
        key = self._key
        try:
            writes = list(self._writes)
            for task in writes:
                task.cancel()
            if writes:
                await asyncio.gather(*writes, return_exceptions=True)

            registration, self._cleanup = self._cleanup, None
            if registration is not None:
                try:
                    await registration.cancel()
                except BroadcastServiceError as exc:
                    logger.warning("Failed to cancel disconnect cleanup: %s", exc)

            if key is not None:
                try:
                    await self.broadcast_service.delete(key)
                except BroadcastServiceError as exc:
                    logger.warning("Failed to remove location at %s: %s", key, exc)
                    message = "Failed to stop sharing (write error)."
                    error = error or ErrorKind.SYNC_FAILURE
        finally:
            self._key = None
            self._teardown = None
            self._update_status(
                state=BroadcastState.IDLE,
                message=message,
                error=error,
                last_report=None,
            )
            logger.info("Location sharing ended: %s", message)

    def _cancel_watch(self) -> None:
        handle, self._watch = self._watch, None
        if handle is not None:
            self.position_source.clear_watch(handle)

    def _update_status(self, **changes: Any) -> None:
        self._set_status(replace(self._status, **changes))

    def _set_status(self, status: BroadcastStatus) -> None:
        self._status = status
        if self.on_status is not None:
            self.on_status(status)
