from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, Response, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from src.adapters.api.dependencies import (
    get_broadcast_hub,
    get_route_repository,
    get_settings,
    get_tracking_query_service,
)
from src.adapters.api.schemas.tracking import (
    ActiveStopSchema,
    BroadcastStatusSchema,
    GeoPointSchema,
    LocationRecordSchema,
    PositionReportSchema,
    TrackingViewSchema,
)
from src.adapters.broadcast.in_memory_broadcast_service import InMemoryBroadcastHub
from src.adapters.position.push_position_source import PushPositionSource
from src.app.config import TrackingSettings
from src.app.ports.output import IRouteRepository, PositionFix
from src.app.services.broadcast_session import BroadcastSession
from src.app.services.subscription_session import SubscriptionSession
from src.app.services.tracking_query_service import TrackingQueryService
from src.domain.exceptions.tracking import PositionSourceError, TrackingError
from src.domain.models import (
    BroadcastState,
    BroadcastStatus,
    ErrorKind,
    PositionReport,
    TrackingView,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/locations", tags=["realtime"])

_GPS_ERROR_KINDS = {k.value: k for k in ErrorKind if k.is_gps_failure}


def _report_to_schema(report: PositionReport | None) -> PositionReportSchema | None:
    if report is None:
        return None
    return PositionReportSchema(
        lat=report.lat, lng=report.lon, timestamp=report.observed_at_ms
    )


def _view_to_schema(
    view: TrackingView, distance_m: float | None = None
) -> TrackingViewSchema:
    stop = view.active_stop
    return TrackingViewSchema(
        vehicle_id=view.vehicle_id,
        online=view.online,
        last_report=_report_to_schema(view.last_report),
        active_stop=(
            ActiveStopSchema(
                stop_id=stop.id,
                name=stop.name,
                location=GeoPointSchema(lat=stop.location.lat, lon=stop.location.lon),
                distance_m=distance_m,
            )
            if stop is not None
            else None
        ),
    )


def _status_to_schema(status: BroadcastStatus) -> BroadcastStatusSchema:
    return BroadcastStatusSchema(
        state=status.state.value,
        vehicle_id=status.vehicle_id,
        message=status.message,
        error=status.error.value if status.error else None,
        last_report=_report_to_schema(status.last_report),
    )


@router.get("/{vehicle_id}", response_model=TrackingViewSchema)
async def get_location(
    vehicle_id: str,
    service: TrackingQueryService = Depends(get_tracking_query_service),
) -> TrackingViewSchema:
    view, distance_m = await service.current_view(vehicle_id)
    return _view_to_schema(view, distance_m)


@router.put("/{vehicle_id}", response_model=PositionReportSchema)
async def put_location(
    vehicle_id: str,
    record: LocationRecordSchema,
    service: TrackingQueryService = Depends(get_tracking_query_service),
) -> PositionReportSchema:
    report = await service.publish(
        vehicle_id, lat=record.lat, lon=record.lng, observed_at_ms=record.timestamp
    )
    return PositionReportSchema(
        lat=report.lat, lng=report.lon, timestamp=report.observed_at_ms
    )


@router.delete("/{vehicle_id}", status_code=204)
async def delete_location(
    vehicle_id: str,
    service: TrackingQueryService = Depends(get_tracking_query_service),
) -> Response:
    await service.clear(vehicle_id)
    return Response(status_code=204)


@router.websocket("/{vehicle_id}/publish")
async def publish_location(
    websocket: WebSocket,
    vehicle_id: str,
    hub: InMemoryBroadcastHub = Depends(get_broadcast_hub),
    settings: TrackingSettings = Depends(get_settings),
) -> None:
    """Driver connection.

    Messages: ``{"lat", "lng"}`` fixes, ``{"type": "error", "kind"}`` for
    device failures and ``{"type": "stop"}`` to stop. Dropping the socket
    without a stop leaves removal of the location to the disconnect cleanup.
    """

    await websocket.accept()
    connection = hub.connect()
    source = PushPositionSource()
    session = BroadcastSession(
        broadcast_service=connection, position_source=source, settings=settings
    )

    try:
        try:
            await session.start(vehicle_id)
        except TrackingError as exc:
            await websocket.send_json({"type": "error", "detail": str(exc)})
            await websocket.close(code=1008)
            return

        await websocket.send_json(_status_to_schema(session.status).model_dump())
        while True:
            message = await websocket.receive_json()
            kind = message.get("type", "fix") if isinstance(message, dict) else None

            if kind == "stop":
                await session.stop()
                await websocket.send_json(_status_to_schema(session.status).model_dump())
                await websocket.close()
                return

            if kind == "error":
                error_kind = _GPS_ERROR_KINDS.get(str(message.get("kind")))
                if error_kind is None:
                    await websocket.send_json(
                        {"type": "error", "detail": "Unknown error kind"}
                    )
                    continue
                source.push_error(PositionSourceError(error_kind, message.get("detail")))
            elif kind == "fix":
                try:
                    record = LocationRecordSchema.model_validate(message)
                except ValidationError:
                    await websocket.send_json(
                        {"type": "error", "detail": "Invalid location record"}
                    )
                    continue
                source.push_fix(PositionFix(lat=record.lat, lon=record.lng))
            else:
                await websocket.send_json({"type": "error", "detail": "Unknown message"})
                continue

            await session.flush()
            if session.state is BroadcastState.STOPPING:
                await session.stop()
            await websocket.send_json(_status_to_schema(session.status).model_dump())

            if session.state is BroadcastState.IDLE:
                await websocket.close()
                return
    except WebSocketDisconnect:
        logger.info("Publisher for %s dropped without stopping", vehicle_id)
    finally:
        if session.state is not BroadcastState.IDLE:
            session.detach()
        await connection.disconnect()


async def _send_views(websocket: WebSocket, updates: asyncio.Queue[TrackingView]) -> None:
    while True:
        view = await updates.get()
        await websocket.send_json(_view_to_schema(view).model_dump())


@router.websocket("/{vehicle_id}/watch")
async def watch_location(
    websocket: WebSocket,
    vehicle_id: str,
    hub: InMemoryBroadcastHub = Depends(get_broadcast_hub),
    route_repository: IRouteRepository = Depends(get_route_repository),
    settings: TrackingSettings = Depends(get_settings),
) -> None:
    """Student connection: streams the tracking view on every change.

    Send ``{"type": "switch", "vehicle_id": ...}`` to track another vehicle.
    """

    await websocket.accept()
    connection = hub.connect()
    updates: asyncio.Queue[TrackingView] = asyncio.Queue()
    session = SubscriptionSession(
        broadcast_service=connection,
        route_repository=route_repository,
        settings=settings,
        on_view=updates.put_nowait,
    )
    sender: asyncio.Task[None] | None = None

    try:
        try:
            await session.subscribe(vehicle_id)
        except TrackingError as exc:
            await websocket.send_json({"type": "error", "detail": str(exc)})
            await websocket.close(code=1008)
            return

        sender = asyncio.create_task(_send_views(websocket, updates))
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict) or message.get("type") != "switch":
                continue
            try:
                await session.switch_vehicle(str(message.get("vehicle_id") or ""))
            except TrackingError as exc:
                await websocket.send_json({"type": "error", "detail": str(exc)})
    except WebSocketDisconnect:
        logger.debug("Watcher for %s disconnected", vehicle_id)
    finally:
        session.unsubscribe()
        if sender is not None:
            sender.cancel()
        await connection.disconnect()
