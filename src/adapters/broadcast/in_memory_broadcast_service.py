from __future__ import annotations

import copy
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from src.app.ports.output import (
    BroadcastServiceError,
    CleanupAction,
    IBroadcastService,
    IDisconnectRegistration,
    ISubscriptionHandle,
)
from src.app.ports.output.broadcast_service import OnChange

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InMemoryBroadcastHub:
    """Process-local realtime key-value store.

    Clients talk to it through ``connect()``; each connection owns its
    disconnect cleanups, which run when that connection goes away.
    """

    _values: dict[str, dict[str, Any]] = field(default_factory=dict)
    _listeners: dict[str, dict[int, OnChange]] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=itertools.count)

    def connect(self) -> "InMemoryBroadcastConnection":
        return InMemoryBroadcastConnection(hub=self)

    def snapshot(self, key: str) -> dict[str, Any] | None:
        value = self._values.get(key)
        return copy.deepcopy(value) if value is not None else None

    def keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._values))

    def _write(self, key: str, record: Mapping[str, Any] | None) -> None:
        if record is None:
            self._values.pop(key, None)
        else:
            self._values[key] = copy.deepcopy(dict(record))

        listeners = self._listeners.get(key, {})
        for listener_id, callback in list(listeners.items()):
            # A callback may unsubscribe others while we iterate.
            if listener_id in listeners:
                callback(self.snapshot(key))

    def _add_listener(self, key: str, callback: OnChange) -> int:
        listener_id = next(self._ids)
        self._listeners.setdefault(key, {})[listener_id] = callback
        return listener_id

    def _remove_listener(self, key: str, listener_id: int) -> None:
        listeners = self._listeners.get(key)
        if not listeners:
            return
        listeners.pop(listener_id, None)
        if not listeners:
            self._listeners.pop(key, None)


@dataclass(slots=True, eq=False)
class _InMemorySubscription(ISubscriptionHandle):
    connection: "InMemoryBroadcastConnection"
    key: str
    listener_id: int
    cancelled: bool = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self.connection.hub._remove_listener(self.key, self.listener_id)
        self.connection._subscriptions.discard(self)


@dataclass(slots=True, eq=False)
class _InMemoryRegistration(IDisconnectRegistration):
    connection: "InMemoryBroadcastConnection"
    action: CleanupAction

    async def cancel(self) -> None:
        self.connection._registrations = [
            r for r in self.connection._registrations if r is not self
        ]


@dataclass(slots=True, eq=False)
class InMemoryBroadcastConnection(IBroadcastService):
    hub: InMemoryBroadcastHub
    connected: bool = True
    _registrations: list[_InMemoryRegistration] = field(default_factory=list)
    _subscriptions: set[_InMemorySubscription] = field(default_factory=set)

    @property
    def pending_cleanups(self) -> tuple[CleanupAction, ...]:
        return tuple(r.action for r in self._registrations)

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise BroadcastServiceError("Broadcast connection is closed")

    async def put(self, key: str, record: Mapping[str, Any]) -> None:
        self._ensure_connected()
        self.hub._write(key, record)

    async def delete(self, key: str) -> None:
        self._ensure_connected()
        self.hub._write(key, None)

    async def get(self, key: str) -> Mapping[str, Any] | None:
        self._ensure_connected()
        return self.hub.snapshot(key)

    async def subscribe(self, key: str, on_change: OnChange) -> ISubscriptionHandle:
        self._ensure_connected()
        listener_id = self.hub._add_listener(key, on_change)
        handle = _InMemorySubscription(
            connection=self, key=key, listener_id=listener_id
        )
        self._subscriptions.add(handle)
        on_change(self.hub.snapshot(key))
        return handle

    async def register_disconnect_cleanup(
        self, key: str, action: CleanupAction
    ) -> IDisconnectRegistration:
        self._ensure_connected()
        registration = _InMemoryRegistration(connection=self, action=action)
        self._registrations.append(registration)
        return registration

    async def disconnect(self) -> None:
        """Transport-level disconnect: runs every cleanup still registered."""

        if not self.connected:
            return
        self.connected = False

        registrations, self._registrations = self._registrations, []
        for registration in registrations:
            action = registration.action
            if action.op == "delete":
                logger.info("Connection dropped; removing %s", action.key)
                self.hub._write(action.key, None)

        for handle in list(self._subscriptions):
            handle.cancel()
