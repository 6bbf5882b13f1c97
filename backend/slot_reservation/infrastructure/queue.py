from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Protocol

from ..config import Settings
from .redis import get_async_redis_client

logger = logging.getLogger(__name__)


class EventQueue(Protocol):
    async def push(self, event: Mapping[str, Any]) -> None: ...

    async def pop(self) -> Optional[str]:
        """Oldest serialized event, or None when the queue is empty."""
        ...


class RedisEventQueue:
    """FIFO over a Redis list: LPUSH on receipt, RPOP on drain."""

    def __init__(self, client: Any, *, key: str) -> None:
        self.client = client
        self.key = key

    async def push(self, event: Mapping[str, Any]) -> None:
        await self.client.lpush(self.key, json.dumps(event, separators=(",", ":")))

    async def pop(self) -> Optional[str]:
        raw = await self.client.rpop(self.key)
        return raw if raw else None


def build_event_queue(settings: Settings) -> Optional[EventQueue]:
    client = get_async_redis_client()
    if client is None:
        return None
    return RedisEventQueue(client, key=f"{settings.redis_namespace}:{settings.webhook_queue_key}")
