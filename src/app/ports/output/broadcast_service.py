from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Literal, Mapping

OnChange = Callable[[Mapping[str, Any] | None], None]


class BroadcastServiceError(Exception):
    """A broadcast service call failed (network partition, permissions, ...)."""


@dataclass(frozen=True, slots=True)
class CleanupAction:
    """Server-side action to run when the registering connection drops."""

    op: Literal["delete"]
    key: str

    @staticmethod
    def delete(key: str) -> "CleanupAction":
        return CleanupAction(op="delete", key=key)


class ISubscriptionHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        """Detach the read; no callback may fire once this returns."""


class IDisconnectRegistration(ABC):
    action: CleanupAction

    @abstractmethod
    async def cancel(self) -> None:
        """Prevent the action from firing on a later disconnect."""


class IBroadcastService(ABC):
    """Port for the realtime key-value broadcast service.

    Values are whole records; writes replace them (last writer wins) and
    reading an absent key yields ``None``, not an error.
    """

    @abstractmethod
    async def put(self, key: str, record: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> Mapping[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    async def subscribe(self, key: str, on_change: OnChange) -> ISubscriptionHandle:
        """Call ``on_change`` with the current value now and on every change."""

    @abstractmethod
    async def register_disconnect_cleanup(
        self, key: str, action: CleanupAction
    ) -> IDisconnectRegistration:
        raise NotImplementedError
