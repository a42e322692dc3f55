import asyncio
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import StreamingResponse
from structlog import get_logger

from palette.plugins import get_plugin_settings_provider
from palette.utils.dependencies import get_generation_queue, require_user_id
from palette.utils.exceptions import NotFoundError

from .config import QueueSettings
from .generation_queue import GenerationQueue
from .models import (
    EnqueueRequest,
    EnqueueResponse,
    GenerationRequest,
    QueueSnapshot,
    QueueStats,
)
from .service import QueueService, get_queue_service

router = APIRouter()
logger = get_logger(__name__)

Queue = Annotated[GenerationQueue, Depends(get_generation_queue)]


@router.post(
    "/requests",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a generation request",
)
async def enqueue_request(
    payload: EnqueueRequest,
    user_id: Annotated[str, Depends(require_user_id)],
    service: Annotated[QueueService, Depends(get_queue_service)],
):
    """
    Validates the input, checks the caller's credits and queues the job.
    Returns immediately; progress is visible through `/requests` or `/events`.
    """
    return await service.enqueue(user_id, payload)


@router.get("/requests", response_model=QueueSnapshot, summary="List all requests")
async def list_requests(queue: Queue):
    return queue.snapshot()


@router.get(
    "/requests/{request_id}",
    response_model=GenerationRequest,
    summary="Get a single request",
)
async def get_request(request_id: str, queue: Queue):
    request = queue.get_request(request_id)
    if request is None:
        raise NotFoundError(f"Request '{request_id}' not found.")
    return request


@router.delete(
    "/requests/{request_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a request, cancelling it if it is running",
)
async def remove_request(request_id: str, queue: Queue):
    if not queue.remove_from_queue(request_id):
        raise NotFoundError(f"Request '{request_id}' not found.")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/requests/clear-completed",
    response_model=QueueStats,
    summary="Remove completed and failed requests",
)
async def clear_completed(queue: Queue):
    removed = queue.clear_completed()
    logger.info("Cleared finished requests via API", removed=removed)
    return queue.stats()


@router.delete(
    "/requests",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove every request and stop processing",
)
async def clear_all(queue: Queue):
    queue.clear_all()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/stats", response_model=QueueStats, summary="Counts per status")
async def get_stats(queue: Queue):
    return queue.stats()


def format_event(snapshot: QueueSnapshot) -> str:
    return f"event: snapshot\ndata: {snapshot.model_dump_json()}\n\n"


async def snapshot_events(
    request: Request, queue: GenerationQueue, keepalive: float
) -> AsyncIterator[str]:
    """Yields the current snapshot, then one event per queue change."""
    updates: asyncio.Queue[QueueSnapshot] = asyncio.Queue()
    unsubscribe = queue.subscribe(updates.put_nowait)
    try:
        yield format_event(queue.snapshot())
        while not await request.is_disconnected():
            try:
                snapshot = await asyncio.wait_for(updates.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_event(snapshot)
    finally:
        unsubscribe()


@router.get("/events", summary="Stream queue snapshots as server-sent events")
async def stream_events(
    request: Request,
    queue: Queue,
    settings: Annotated[QueueSettings, Depends(get_plugin_settings_provider(QueueSettings))],
):
    return StreamingResponse(
        snapshot_events(request, queue, settings.queue_events_keepalive_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
