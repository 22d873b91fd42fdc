"""
Event Broadcaster
=================
Fire-and-forget fan-out of proxy events (snapshot, call, alert, reset)
to dashboard stream subscribers and in-process listeners.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()

EVENT_NAMES = ("snapshot", "call", "alert", "reset")


def format_sse(event: str, data: Any) -> str:
    """Render one server-sent event frame."""
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


class EventBroadcaster:
    """
    Delivers events without ever blocking the caller.

    Subscriber queues are bounded; a full queue drops the event for that
    subscriber only. Listener exceptions are logged and swallowed.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._queues: set[asyncio.Queue] = set()
        self._listeners: list[Callable[[str, dict[str, Any]], None]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    def add_listener(self, listener: Callable[[str, dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def emit(self, event: str, payload: Any) -> None:
        """Publish an event to every subscriber and listener."""
        try:
            data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        except Exception as e:
            logger.warning("Unserializable event payload", event=event, error=str(e))
            return

        for queue in list(self._queues):
            try:
                queue.put_nowait((event, data))
            except asyncio.QueueFull:
                logger.debug("Dropping event for slow subscriber", event=event)

        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception as e:
                logger.warning("Event listener failed", event=event, error=str(e))
