"""
Event Stream Endpoint
=====================
Server-sent events feed of live proxy activity for the dashboard.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from tollgate.api.deps import get_broadcaster
from tollgate.services.events import EventBroadcaster, format_sse

router = APIRouter()

KEEPALIVE_SECONDS = 30.0


async def event_stream(
    request: Request,
    broadcaster: EventBroadcaster,
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    queue = broadcaster.subscribe()
    try:
        yield format_sse("connected", {"status": "monitoring"})
        while True:
            try:
                event, data = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ":ping\n\n"
                continue
            yield format_sse(event, data)
    finally:
        broadcaster.unsubscribe(queue)


@router.get("/events", summary="Live event stream")
async def stream_events(
    request: Request,
    broadcaster: Annotated[EventBroadcaster, Depends(get_broadcaster)],
) -> StreamingResponse:
    return StreamingResponse(
        event_stream(request, broadcaster),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
