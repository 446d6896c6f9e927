"""
Redis Configuration

Async Redis client shared by the rate limiter.
"""

import logging

from redis.asyncio import Redis, from_url

from app.core.config import settings

logger = logging.getLogger(__name__)

# Redis client instance
redis_client: Redis | None = None


async def init_redis() -> Redis:
    """
    Initialize the Redis connection.

    Call this on application startup. Raises if Redis is unreachable.
    """
    global redis_client
    client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    redis_client = client
    return redis_client


def get_redis() -> Redis | None:
    """Return the Redis client, or None when Redis was not initialized."""
    return redis_client


async def close_redis() -> None:
    """Close the Redis connection."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
