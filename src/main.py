from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.adapters.api.controllers.realtime import router as realtime_router
from src.adapters.api.controllers.routes import router as routes_router
from src.app.ports.output import BroadcastServiceError
from src.domain.exceptions.tracking import (
    BroadcastSyncError,
    SessionStateError,
    TrackingError,
)

app = FastAPI(title="Bus Tracker")
app.include_router(routes_router)
app.include_router(realtime_router)


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError) -> JSONResponse:
    if isinstance(exc, SessionStateError):
        status_code = 409
    elif isinstance(exc, BroadcastSyncError):
        status_code = 503
    else:
        status_code = 400
    return JSONResponse(
        status_code=status_code, content={"detail": str(exc) or type(exc).__name__}
    )


@app.exception_handler(BroadcastServiceError)
async def broadcast_error_handler(
    request: Request, exc: BroadcastServiceError
) -> JSONResponse:
    logging.getLogger("uvicorn.error").warning(
        "Broadcast service failure: %s", exc, extra={"path": str(request.url.path)}
    )
    return JSONResponse(status_code=503, content={"detail": "Location sync failed"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Ensure API errors are JSON so clients can display them."""

    logging.getLogger("uvicorn.error").exception(
        "Unhandled exception", extra={"path": str(request.url.path)}
    )

    reveal = (os.getenv("BUSTRACKER_REVEAL_ERRORS") or "").strip().lower() in {
        "1",
        "true",
        "yes",
        "on",
    }

    if reveal or isinstance(exc, (FileNotFoundError, RuntimeError, ValueError)):
        detail = str(exc) or exc.__class__.__name__
    else:
        detail = "Internal Server Error"

    return JSONResponse(status_code=500, content={"detail": detail})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
