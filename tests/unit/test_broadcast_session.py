from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from src.adapters.broadcast.in_memory_broadcast_service import (
    InMemoryBroadcastConnection,
    InMemoryBroadcastHub,
)
from src.adapters.position.push_position_source import PushPositionSource
from src.app.config import TrackingSettings
from src.app.ports.output import (
    BroadcastServiceError,
    CleanupAction,
    IDisconnectRegistration,
    PositionFix,
)
from src.app.services.broadcast_session import BroadcastSession
from src.domain.exceptions.tracking import (
    BroadcastSyncError,
    InvalidVehicleId,
    PositionSourceError,
    SessionStateError,
)
from src.domain.models import BroadcastState, BroadcastStatus, ErrorKind

KEY = "busLocations/Bus1"


class RecordingConnection(InMemoryBroadcastConnection):
    """In-memory connection that logs calls and can be told to fail."""

    def __init__(
        self,
        hub: InMemoryBroadcastHub,
        *,
        fail_put: bool = False,
        fail_delete: bool = False,
        fail_register: bool = False,
        register_delay_s: float = 0.0,
    ) -> None:
        super().__init__(hub=hub)
        self.calls: list[tuple[str, str]] = []
        self.fail_put = fail_put
        self.fail_delete = fail_delete
        self.fail_register = fail_register
        self.register_delay_s = register_delay_s

    async def put(self, key: str, record: Mapping[str, Any]) -> None:
        self.calls.append(("put", key))
        if self.fail_put:
            raise BroadcastServiceError("permission denied")
        await super().put(key, record)

    async def delete(self, key: str) -> None:
        self.calls.append(("delete", key))
        if self.fail_delete:
            raise BroadcastServiceError("network partition")
        await super().delete(key)

    async def register_disconnect_cleanup(
        self, key: str, action: CleanupAction
    ) -> IDisconnectRegistration:
        self.calls.append(("register", key))
        if self.register_delay_s:
            await asyncio.sleep(self.register_delay_s)
        if self.fail_register:
            raise BroadcastServiceError("offline")
        return await super().register_disconnect_cleanup(key, action)


def _session(
    connection: InMemoryBroadcastConnection,
    source: PushPositionSource,
    statuses: list[BroadcastStatus] | None = None,
    **settings: Any,
) -> BroadcastSession:
    return BroadcastSession(
        broadcast_service=connection,
        position_source=source,
        settings=TrackingSettings(**settings),
        clock=lambda: 1_000,
        on_status=statuses.append if statuses is not None else None,
    )


def test_start_registers_delete_cleanup_before_first_write() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = RecordingConnection(hub)
        source = PushPositionSource()
        session = _session(conn, source)

        await session.start("Bus1")

        assert session.state is BroadcastState.STARTING
        registration = session.cleanup_registration
        assert registration is not None
        assert registration.action == CleanupAction.delete(KEY)
        assert conn.pending_cleanups == (CleanupAction(op="delete", key=KEY),)

        source.push_fix(PositionFix(lat=12.9, lon=74.99))
        await session.flush()

        assert conn.calls == [("register", KEY), ("put", KEY)]
        assert session.state is BroadcastState.SHARING
        assert session.status.message == "Sharing location for Bus1"
        assert hub.snapshot(KEY) == {"lat": 12.9, "lng": 74.99, "timestamp": 1_000}

        await session.stop()

    asyncio.run(scenario())


def test_starting_twice_is_a_precondition_error_not_a_second_watch() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()
        session = _session(hub.connect(), source)

        await session.start("Bus1")
        with pytest.raises(SessionStateError):
            await session.start("Bus1")
        with pytest.raises(SessionStateError):
            await session.start("Bus2")

        assert len(source._watches) == 1
        await session.stop()
        assert not source.active

    asyncio.run(scenario())


@pytest.mark.parametrize("vehicle_id", ["", "  "])
def test_start_rejects_empty_vehicle_id(vehicle_id: str) -> None:
    async def scenario() -> None:
        session = _session(InMemoryBroadcastHub().connect(), PushPositionSource())
        with pytest.raises(InvalidVehicleId):
            await session.start(vehicle_id)
        assert session.state is BroadcastState.IDLE

    asyncio.run(scenario())


def test_stop_cancels_watch_and_cleanup_then_deletes_key() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = RecordingConnection(hub)
        source = PushPositionSource()
        session = _session(conn, source)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()
        await session.stop()

        assert session.state is BroadcastState.IDLE
        assert session.status.error is None
        assert not source.active
        assert conn.pending_cleanups == ()
        assert hub.snapshot(KEY) is None

        # Late fixes after stop are never written.
        source.push_fix(PositionFix(lat=3.0, lon=4.0))
        await session.flush()
        assert conn.calls.count(("put", KEY)) == 1

        # Idempotent.
        await session.stop()
        assert conn.calls.count(("delete", KEY)) == 1

    asyncio.run(scenario())


def test_stop_discards_writes_still_in_flight() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()
        session = _session(hub.connect(), source)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.stop()

        assert hub.snapshot(KEY) is None
        assert session.state is BroadcastState.IDLE

    asyncio.run(scenario())


def test_write_failure_keeps_starting_and_reports_sync_failure() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = RecordingConnection(hub, fail_put=True)
        source = PushPositionSource()
        statuses: list[BroadcastStatus] = []
        session = _session(conn, source, statuses)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()

        assert session.state is BroadcastState.STARTING
        assert session.status.error is ErrorKind.SYNC_FAILURE
        assert not session.status.error.is_gps_failure
        assert conn.calls.count(("put", KEY)) == 1

        conn.fail_put = False
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()
        assert session.state is BroadcastState.SHARING
        assert session.status.error is None

        await session.stop()
        states = [s.state for s in statuses]
        assert states[0] is BroadcastState.STARTING
        assert states[-1] is BroadcastState.IDLE

    asyncio.run(scenario())


def test_delete_failure_still_ends_idle() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = RecordingConnection(hub, fail_delete=True)
        source = PushPositionSource()
        session = _session(conn, source)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()
        await session.stop()

        assert session.state is BroadcastState.IDLE
        assert session.status.error is ErrorKind.SYNC_FAILURE
        assert not source.active

    asyncio.run(scenario())


def test_registration_failure_aborts_start() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = RecordingConnection(hub, fail_register=True)
        source = PushPositionSource()
        session = _session(conn, source)

        with pytest.raises(BroadcastSyncError):
            await session.start("Bus1")

        assert session.state is BroadcastState.IDLE
        assert session.status.error is ErrorKind.SYNC_FAILURE
        assert not source.active
        assert ("put", KEY) not in conn.calls

    asyncio.run(scenario())


def test_stop_during_start_leaves_no_watch_or_cleanup() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = RecordingConnection(hub, register_delay_s=0.01)
        source = PushPositionSource()
        session = _session(conn, source)

        starting = asyncio.create_task(session.start("Bus1"))
        await asyncio.sleep(0)
        assert session.state is BroadcastState.STARTING

        await session.stop()
        with pytest.raises(SessionStateError):
            await starting

        assert session.state is BroadcastState.IDLE
        assert not source.active
        assert conn.pending_cleanups == ()
        assert session.cleanup_registration is None

        await session.start("Bus1")
        assert len(source._watches) == 1
        assert conn.pending_cleanups == (CleanupAction.delete(KEY),)

        await session.stop()
        assert not source.active
        assert conn.pending_cleanups == ()

    asyncio.run(scenario())


def test_permission_denied_is_fatal() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()
        session = _session(hub.connect(), source)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()

        source.push_error(PositionSourceError(ErrorKind.PERMISSION_DENIED))
        assert not source.active
        await session.stop()

        assert session.state is BroadcastState.IDLE
        assert session.status.error is ErrorKind.PERMISSION_DENIED
        assert session.status.message == "Location permission denied."
        assert hub.snapshot(KEY) is None

    asyncio.run(scenario())


def test_unavailable_and_timeout_are_transient() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()
        session = _session(hub.connect(), source)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()

        source.push_error(PositionSourceError(ErrorKind.POSITION_UNAVAILABLE))
        assert session.state is BroadcastState.SHARING
        assert session.status.error is ErrorKind.POSITION_UNAVAILABLE

        source.push_error(PositionSourceError(ErrorKind.TIMEOUT))
        assert session.state is BroadcastState.SHARING
        assert session.status.error is ErrorKind.TIMEOUT
        assert source.active

        source.push_fix(PositionFix(lat=1.5, lon=2.0))
        await session.flush()
        assert session.status.error is None

        await session.stop()

    asyncio.run(scenario())


def test_stalled_fix_times_out() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()
        session = _session(hub.connect(), source, fix_timeout_ms=20)

        await session.start("Bus1")
        await asyncio.sleep(0.08)

        assert session.state is BroadcastState.STARTING
        assert session.status.error is ErrorKind.TIMEOUT
        await session.stop()

    asyncio.run(scenario())


def test_transport_drop_without_stop_deletes_key_via_registered_cleanup() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        conn = hub.connect()
        source = PushPositionSource()
        session = _session(conn, source)

        await session.start("Bus1")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()
        assert hub.snapshot(KEY) is not None

        await conn.disconnect()
        session.detach()

        assert hub.snapshot(KEY) is None
        assert not source.active
        assert session.state is BroadcastState.IDLE

    asyncio.run(scenario())


def test_context_manager_stops_on_exit() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()

        async with _session(hub.connect(), source) as session:
            await session.start("Bus1")
            source.push_fix(PositionFix(lat=1.0, lon=2.0))
            await session.flush()
            assert hub.snapshot(KEY) is not None

        assert session.state is BroadcastState.IDLE
        assert hub.snapshot(KEY) is None

    asyncio.run(scenario())


def test_session_can_restart_after_stop() -> None:
    async def scenario() -> None:
        hub = InMemoryBroadcastHub()
        source = PushPositionSource()
        session = _session(hub.connect(), source)

        await session.start("Bus1")
        await session.stop()
        await session.start("Bus2")
        source.push_fix(PositionFix(lat=1.0, lon=2.0))
        await session.flush()

        assert hub.keys() == ("busLocations/Bus2",)
        await session.stop()

    asyncio.run(scenario())
