"""
Shared async Redis client.

Redis is optional: the slot lock and the webhook queue both degrade when
`REDIS_URL` is not configured, so callers must handle a None client.
"""

import logging
from typing import Optional

from redis.asyncio import Redis as AsyncRedis

from ..config import get_settings

logger = logging.getLogger(__name__)

_async_redis_client: Optional[AsyncRedis] = None


def get_async_redis_client() -> Optional[AsyncRedis]:
    global _async_redis_client

    if _async_redis_client is None:
        redis_url = get_settings().redis_url
        if not redis_url:
            return None
        _async_redis_client = AsyncRedis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("async redis client initialized")

    return _async_redis_client


async def close_async_redis_client() -> None:
    global _async_redis_client

    if _async_redis_client is not None:
        await _async_redis_client.aclose()
        _async_redis_client = None
        logger.info("async redis client closed")
