from __future__ import annotations

import asyncio
import logging
import os
import sys

from src.adapters.broadcast.dynamodb_broadcast_service import DynamoDbBroadcastService
from src.adapters.position.replay_position_source import ReplayPositionSource
from src.app.config import TrackingSettings
from src.app.services.broadcast_session import BroadcastSession
from src.domain.exceptions.tracking import TrackingError
from src.domain.models import BroadcastStatus

logger = logging.getLogger("src.simulator")


def _log_status(status: BroadcastStatus) -> None:
    if status.error is not None:
        logger.warning("[%s] %s (%s)", status.state.value, status.message, status.error.value)
    else:
        logger.info("[%s] %s", status.state.value, status.message)


async def run(vehicle_id: str) -> BroadcastStatus:
    """Replay a recorded track as a driver sharing their location."""

    source = ReplayPositionSource()
    session = BroadcastSession(
        broadcast_service=DynamoDbBroadcastService(),
        position_source=source,
        settings=TrackingSettings.from_env(),
        on_status=_log_status,
    )

    async with session:
        await session.start(vehicle_id)
        await source.wait_finished()
        await session.flush()

    return session.status


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )

    vehicle_id = os.getenv("VEHICLE_ID", "Bus1")
    try:
        final = asyncio.run(run(vehicle_id))
    except KeyboardInterrupt:
        return
    except TrackingError as exc:
        logger.error("Could not share location for %s: %s", vehicle_id, exc)
        sys.exit(1)
    if final.error is not None:
        sys.exit(1)


if __name__ == "__main__":
    main()
