"""Server-sent event stream of fetch progress.

Each connection gets its own bounded subscription. The stream opens with
a ``connected`` event, then the current snapshot if a run is active, then
every progress event until the run's terminal event, after which a
``done`` event closes it. Comment lines keep idle connections alive.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from perpdata.exceptions import (
    FetchAlreadyRunningError,
    NoAssetsRegisteredError,
    UnknownPlatformError,
)
from perpdata.ingestion.fetcher import DataFetcherService
from perpdata.ingestion.progress import DONE, ProgressSubscription
from perpdata.ingestion.registry import FetcherRegistry

log = structlog.get_logger(__name__)

router = APIRouter()

_SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def progress_events(
    service: DataFetcherService,
    subscription: ProgressSubscription,
    heartbeat_interval: float,
    request: Request | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for one subscriber until the DONE sentinel arrives."""
    try:
        yield format_sse({"type": "connected", "platform": service.platform})

        snapshot = service.current_progress()
        if snapshot is not None:
            yield format_sse(snapshot.to_dict())

        while True:
            if request is not None and await request.is_disconnected():
                break
            try:
                item = await subscription.get(timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            if item is DONE:
                yield format_sse({"type": "done"})
                break
            yield format_sse(item.to_dict())
    finally:
        subscription.close()
        log.debug("progress_stream_closed", platform=service.platform)


@router.get("/fetch/{platform}/stream", response_model=None)
async def stream_progress(
    platform: str, request: Request, trigger: str | None = None
) -> StreamingResponse | JSONResponse:
    """SSE progress stream. ``trigger=initial|incremental`` starts a run when idle."""
    registry: FetcherRegistry = request.app.state.registry
    try:
        service = registry.get(platform)
    except UnknownPlatformError as e:
        return JSONResponse(content={"error": str(e)}, status_code=404)

    if trigger not in (None, "initial", "incremental"):
        return JSONResponse(content={"error": f"Invalid trigger: {trigger}"}, status_code=400)

    # Subscribe before starting so the start event is not missed
    subscription = service.subscribe()
    if trigger is not None and not service.is_running:
        try:
            if trigger == "initial":
                await registry.start_initial(platform)
            else:
                await registry.start_incremental(platform)
        except FetchAlreadyRunningError:
            log.info("progress_stream_attached", platform=platform)
        except NoAssetsRegisteredError as e:
            subscription.close()
            return JSONResponse(content={"error": str(e)}, status_code=400)

    log.info("progress_stream_opened", platform=platform, trigger=trigger)
    return StreamingResponse(
        progress_events(service, subscription, request.app.state.heartbeat_interval, request),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )
