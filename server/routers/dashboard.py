"""Dashboard routes: aggregate stats, recent runs and the live event stream."""

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import orjson
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from core.config import Settings
from core.container import container
from core.logging import get_logger
from constants import dashboard_channel
from services.status_broadcaster import StatusBroadcaster
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

KEEPALIVE_FRAME = ":keepalive\n\n"
# Events buffered per client before new ones are dropped
STREAM_QUEUE_SIZE = 1000


def format_event(event: Dict[str, Any]) -> str:
    return f"data: {orjson.dumps(event, default=str).decode()}\n\n"


async def event_stream(
    broadcaster: StatusBroadcaster,
    organization_id: str,
    keepalive_seconds: float,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    max_queued: int = STREAM_QUEUE_SIZE,
) -> AsyncIterator[str]:
    """Relay an organization's dashboard events as server-sent event frames.

    The subscription is registered before the `connected` frame is yielded
    and removed when the generator is closed. A client that falls more than
    max_queued events behind loses the newest events until it catches up.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=max_queued)

    def enqueue(event: Dict[str, Any]) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dashboard stream backlog full, dropping event",
                           organization_id=organization_id, event_type=event.get("type"))

    def on_event(event: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(enqueue, event)

    unsubscribe = broadcaster.subscribe(dashboard_channel(organization_id), on_event)
    logger.info("Dashboard stream opened", organization_id=organization_id)
    try:
        yield format_event({
            "type": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            yield format_event(event)
    finally:
        unsubscribe()
        logger.info("Dashboard stream closed", organization_id=organization_id)


@router.get("/stats")
async def get_stats(
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return {"ok": True, "data": await workflow_service.dashboard_stats(organization_id)}


@router.get("/recent-runs")
async def get_recent_runs(
    limit: int = Query(default=10, ge=1, le=100),
    organization_id: str = Header(..., alias="X-Organization-Id"),
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return {"ok": True, "data": await workflow_service.recent_runs(organization_id, limit=limit)}


@router.get("/stream")
async def stream_events(
    request: Request,
    organization_id: str = Header(..., alias="X-Organization-Id"),
    broadcaster: StatusBroadcaster = Depends(lambda: container.broadcaster()),
    settings: Settings = Depends(lambda: container.settings())
):
    """Server-sent events for the organization's dashboard channel."""
    return StreamingResponse(
        event_stream(broadcaster, organization_id, settings.stream_keepalive_seconds,
                     request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
