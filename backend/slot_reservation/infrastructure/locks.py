from __future__ import annotations

import logging
import uuid
from typing import Any

from redis.exceptions import RedisError

from ..config import Settings
from ..domain.locks import NullSlotLock, SlotLock
from .redis import get_async_redis_client

logger = logging.getLogger(__name__)

# KEYS[1] = lock key, ARGV[1] = holder token
RELEASE_LUA = r"""
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""


class RedisSlotLock:
    """SET NX EX lock with compare-and-delete release. Fails open when Redis errors."""

    def __init__(self, client: Any, *, namespace: str) -> None:
        self.client = client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def try_acquire(self, key: str, ttl_seconds: int) -> str | None:
        token = uuid.uuid4().hex
        try:
            acquired = await self.client.set(self._key(key), token, nx=True, ex=ttl_seconds)
        except RedisError as exc:
            logger.warning(
                "slot_lock_acquire_failed",
                extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
            )
            return token
        return token if acquired else None

    async def release(self, key: str, token: str) -> None:
        try:
            await self.client.eval(RELEASE_LUA, 1, self._key(key), token)
        except RedisError as exc:
            # the TTL reclaims the key if this delete never lands
            logger.warning(
                "slot_lock_release_failed",
                extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
            )


def build_slot_lock(settings: Settings) -> SlotLock:
    """Pick the lock strategy once, at process start."""
    if not settings.slot_lock_enabled:
        return NullSlotLock()
    client = get_async_redis_client()
    if client is None:
        logger.info("slot lock disabled: REDIS_URL not configured")
        return NullSlotLock()
    return RedisSlotLock(client, namespace=settings.redis_namespace)
