"""Optional Redis connection for worker wake-up notifications."""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def connect_redis(url: str | None) -> aioredis.Redis | None:
    """Return an async Redis client, or None when Redis is disabled or unreachable."""
    if not url:
        return None
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("Redis not available, workers will poll instead: %s", exc)
        await client.aclose()
        return None
    return client
