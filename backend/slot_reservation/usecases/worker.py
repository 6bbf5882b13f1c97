from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from ..infrastructure.queue import EventQueue

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[Any]]


async def drain_queue(queue: EventQueue, handler: EventHandler, *, max_items: int) -> int:
    """
    Apply up to `max_items` queued events, oldest first.

    Each event is handled on its own: a malformed payload or a failing handler
    is logged and counted, and draining continues with the next event.
    Returns the number of events taken off the queue.
    """
    processed = 0
    while processed < max_items:
        raw = await queue.pop()
        if raw is None:
            break
        processed += 1

        try:
            event = json.loads(raw)
        except ValueError:
            logger.warning("dropping malformed queued event", extra={"preview": raw[:200]})
            continue
        if not isinstance(event, dict):
            logger.warning("dropping queued event that is not an object", extra={"preview": raw[:200]})
            continue

        try:
            await handler(event)
        except Exception:
            logger.exception(
                "queued event failed",
                extra={"event_id": event.get("id"), "event_type": event.get("type")},
            )

    if processed:
        logger.info("queue drained", extra={"processed": processed})
    return processed
