"""In-process pub/sub for live processing events.

Delivery is best effort and at most once: no history is kept, a subscriber
only sees events published while it is attached. Single process only.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Event = dict[str, Any]
Subscriber = Callable[[Event], None]


def utc_now() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)
        logger.debug("Subscriber added (total: %d)", len(self._subscribers))

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                return
            logger.debug("Subscriber removed (total: %d)", len(self._subscribers))

        return unsubscribe

    def publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.warning("Subscriber failed on %s event", event.get("type"), exc_info=True)


class QueueSubscriber:
    """Adapts a bus subscription to an ``asyncio.Queue`` for streaming responses."""

    def __init__(self, maxsize: int = 500) -> None:
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full, dropping %s event", event.get("type"))

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


def start_event(total: int, processed: int = 0) -> Event:
    return {"type": "start", "total": total, "processed": processed}


def progress_event(processed: int, total: int, failed: int, item: Optional[dict[str, Any]]) -> Event:
    return {"type": "progress", "processed": processed, "total": total, "failed": failed, "item": item}


def step_event(item_id: str, step: dict[str, Any]) -> Event:
    return {"type": "step", "itemId": item_id, "step": step}


def item_error_event(item_id: str, error: str, processed: int, total: int, failed: int) -> Event:
    return {
        "type": "error",
        "itemId": item_id,
        "error": error,
        "processed": processed,
        "total": total,
        "failed": failed,
    }


def complete_event(processed: int, total: int, failed: int) -> Event:
    return {"type": "complete", "processed": processed, "total": total, "failed": failed}


def fatal_error_event(error: str) -> Event:
    return {"type": "fatal-error", "error": error}


def reconnect_event(snapshot: dict[str, Any]) -> Event:
    return {"type": "reconnect", **snapshot}
