from __future__ import annotations

import json
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from inboxai.dependencies import get_orchestrator, get_repository
from inboxai.services.event_bus import QueueSubscriber
from inboxai.services.job_state import JobMode

router = APIRouter(prefix="/api/emails", tags=["processing"])

KEEPALIVE_SECONDS = 15.0
DISCONNECT_POLL_SECONDS = 1.0


@router.get("/ai/status")
async def ai_status() -> dict[str, Any]:
    return await get_orchestrator().get_ai_status()


@router.get("/ai/processing-status")
async def processing_status() -> dict[str, Any]:
    return get_orchestrator().get_status().to_dict()


@router.post("/ai/process")
async def process_all() -> dict[str, Any]:
    snapshot = await get_orchestrator().start_batch(JobMode.BATCH)
    return snapshot.to_dict()


@router.post("/ai/recalculate")
async def recalculate_all() -> dict[str, Any]:
    snapshot = await get_orchestrator().start_batch(JobMode.RECALCULATE)
    return snapshot.to_dict()


@router.post("/{email_id}/ai/reprocess")
async def reprocess(email_id: str) -> dict[str, Any]:
    if await get_repository().get_email(email_id) is None:
        raise HTTPException(status_code=404, detail="Unknown email")
    snapshot = await get_orchestrator().start_single(email_id)
    return snapshot.to_dict()


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


async def sse_events(
    subscriber: QueueSubscriber,
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    poll_seconds: float = DISCONNECT_POLL_SECONDS,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Yield SSE frames until the client goes away.

    The queue is polled in short slices so a closed client is noticed within
    ``poll_seconds`` even when no events arrive; a keep-alive comment goes out
    after ``keepalive_seconds`` of silence.
    """
    idle = 0.0
    while not await is_disconnected():
        event = await subscriber.get(timeout=poll_seconds)
        if event is None:
            idle += poll_seconds
            if idle >= keepalive_seconds:
                idle = 0.0
                yield ": keep-alive\n\n"
            continue
        idle = 0.0
        yield format_sse(event)


@router.get("/ai/process-stream")
async def process_stream(request: Request) -> StreamingResponse:
    subscriber = QueueSubscriber()
    unsubscribe = get_orchestrator().subscribe_with_reconnect(subscriber)

    async def stream() -> AsyncIterator[str]:
        try:
            async for frame in sse_events(subscriber, request.is_disconnected):
                yield frame
        finally:
            # The run itself keeps going; only this observer goes away.
            unsubscribe()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
