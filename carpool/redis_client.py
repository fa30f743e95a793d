"""Redis async client; opened in lifespan, backs the active-search registry and the health probe."""
import logging

import redis.asyncio as aioredis

from carpool.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def open_redis(url: str | None = None) -> aioredis.Redis:
    """Create the shared client and check it answers before the app starts taking traffic."""
    global _redis
    client = aioredis.from_url(url or settings.REDIS_URL)
    await client.ping()
    _redis = client
    logger.info("redis_connected url=%s", url or settings.REDIS_URL)
    return client


async def close_redis() -> None:
    global _redis
    client, _redis = _redis, None
    if client is not None:
        await client.aclose()


async def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialized")
    return _redis
