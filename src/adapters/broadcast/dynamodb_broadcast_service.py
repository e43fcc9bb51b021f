from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from botocore.exceptions import BotoCoreError, ClientError

from src.adapters.aws import dynamodb_client
from src.app.ports.output import (
    BroadcastServiceError,
    CleanupAction,
    IBroadcastService,
    IDisconnectRegistration,
    ISubscriptionHandle,
)
from src.app.ports.output.broadcast_service import OnChange

logger = logging.getLogger(__name__)

_KEY_ATTR = "broadcast_key"
_EXPIRES_ATTR = "expires_at"
_UNSET = object()


def _to_attr(value: Any) -> dict[str, Any]:
    if value is None:
        return {"NULL": True}
    if isinstance(value, bool):
        return {"BOOL": value}
    if isinstance(value, int):
        return {"N": str(value)}
    if isinstance(value, float):
        # DynamoDB numbers are decimal strings; avoid exponent notation.
        return {"N": format(Decimal(repr(value)), "f")}
    return {"S": str(value)}


def _from_attr(attr: Mapping[str, Any]) -> Any:
    if "N" in attr:
        raw = attr["N"]
        if any(c in raw for c in ".eE"):
            return float(raw)
        return int(raw)
    if "BOOL" in attr:
        return bool(attr["BOOL"])
    if "NULL" in attr:
        return None
    return attr.get("S")


@dataclass(slots=True, eq=False)
class _PollingSubscription(ISubscriptionHandle):
    task: asyncio.Task[None] | None = None
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None:
            self.task.cancel()


@dataclass(slots=True, eq=False)
class _LeaseRegistration(IDisconnectRegistration):
    service: "DynamoDbBroadcastService"
    action: CleanupAction

    async def cancel(self) -> None:
        self.service._leased_keys.discard(self.action.key)


@dataclass(slots=True)
class DynamoDbBroadcastService(IBroadcastService):
    """Broadcast service backed by a DynamoDB table (supports LocalStack via env).

    Env vars:
      - BROADCAST_TABLE (default: bus-tracker-locations)
      - BROADCAST_POLL_INTERVAL_S: subscriber polling interval (default 1.0)
      - BROADCAST_LEASE_S: disconnect-cleanup lease (default 60)
      - ENDPOINT_URL (preferred for LocalStack)
      - AWS_REGION

    Notes:
      - Items are keyed by ``broadcast_key`` (S); records are stored as
        top-level attributes.
      - Disconnect cleanup is a lease: while registered, each put stamps an
        ``expires_at`` TTL attribute, so DynamoDB TTL deletes the item if the
        publisher disappears. TTL deletion is lazy; reads treat expired
        items as absent.
    """

    table_name: str | None = None
    poll_interval_s: float | None = None
    lease_s: int | None = None

    _leased_keys: set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.poll_interval_s is None:
            self.poll_interval_s = float(os.getenv("BROADCAST_POLL_INTERVAL_S", "1.0"))
        if self.lease_s is None:
            self.lease_s = int(os.getenv("BROADCAST_LEASE_S", "60"))

    def _table(self) -> str:
        return (
            self.table_name or os.getenv("BROADCAST_TABLE") or "bus-tracker-locations"
        )

    def _put_sync(self, key: str, record: Mapping[str, Any]) -> None:
        item = {name: _to_attr(value) for name, value in record.items()}
        item[_KEY_ATTR] = {"S": key}
        if key in self._leased_keys:
            expires_at = int(time.time()) + int(self.lease_s or 0)
            item[_EXPIRES_ATTR] = {"N": str(expires_at)}
        dynamodb_client().put_item(TableName=self._table(), Item=item)

    def _delete_sync(self, key: str) -> None:
        dynamodb_client().delete_item(
            TableName=self._table(), Key={_KEY_ATTR: {"S": key}}
        )

    def _get_sync(self, key: str) -> dict[str, Any] | None:
        resp = dynamodb_client().get_item(
            TableName=self._table(),
            Key={_KEY_ATTR: {"S": key}},
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if not item:
            return None

        expires = item.get(_EXPIRES_ATTR, {}).get("N")
        if expires is not None and int(expires) <= int(time.time()):
            return None

        return {
            name: _from_attr(attr)
            for name, attr in item.items()
            if name not in {_KEY_ATTR, _EXPIRES_ATTR}
        }

    async def _call(self, fn: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except (ClientError, BotoCoreError) as exc:
            raise BroadcastServiceError(f"{type(exc).__name__}: {exc}") from exc

    async def put(self, key: str, record: Mapping[str, Any]) -> None:
        await self._call(self._put_sync, key, dict(record))

    async def delete(self, key: str) -> None:
        await self._call(self._delete_sync, key)

    async def get(self, key: str) -> Mapping[str, Any] | None:
        return await self._call(self._get_sync, key)

    async def subscribe(self, key: str, on_change: OnChange) -> ISubscriptionHandle:
        current = await self.get(key)
        handle = _PollingSubscription()
        on_change(current)
        handle.task = asyncio.get_running_loop().create_task(
            self._poll(key, on_change, handle, current)
        )
        return handle

    async def _poll(
        self,
        key: str,
        on_change: OnChange,
        handle: _PollingSubscription,
        last: Any = _UNSET,
    ) -> None:
        while not handle.cancelled:
            await asyncio.sleep(float(self.poll_interval_s or 1.0))
            try:
                value = await self.get(key)
            except BroadcastServiceError as exc:
                logger.warning("Polling %s failed: %s", key, exc)
                continue
            if handle.cancelled:
                return
            if value != last:
                last = value
                on_change(value)

    async def register_disconnect_cleanup(
        self, key: str, action: CleanupAction
    ) -> IDisconnectRegistration:
        if action.op != "delete" or action.key != key:
            raise BroadcastServiceError(f"Unsupported cleanup action: {action}")
        self._leased_keys.add(key)
        return _LeaseRegistration(service=self, action=action)
