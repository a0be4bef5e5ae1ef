"""
Redis Client - async singleton.

Used for alert throttling (one alert per key per window) so repeated scans
of the same stuck webhook receipt do not flood the logs.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from relay.core.config import settings
from relay.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password part of REDIS_URL for logs (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """Return the shared Redis client, connecting on first use."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def acquire_throttle(key: str, ttl_seconds: int) -> bool:
    """
    SET NX EX on ``key``. True the first time within ``ttl_seconds``,
    False while the key is still alive.
    """
    redis = await get_redis()
    return bool(await redis.set(key, "1", nx=True, ex=ttl_seconds))
