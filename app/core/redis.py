from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from app.config import settings

logger = logging.getLogger("app.redis")

_redis_client: Optional[Redis] = None


def get_redis_client() -> Redis:
    global _redis_client
    if _redis_client is None:
        if not settings.REDIS_URL:
            raise RuntimeError("REDIS_URL is not set")
        _redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


async def publish_message(channel: str, message: str) -> None:
    receivers = await get_redis_client().publish(channel, message)
    logger.debug("published to %s receivers=%s", channel, receivers)


@asynccontextmanager
async def subscription(channel: str) -> AsyncIterator[PubSub]:
    pubsub = get_redis_client().pubsub()
    await pubsub.subscribe(channel)
    try:
        yield pubsub
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
