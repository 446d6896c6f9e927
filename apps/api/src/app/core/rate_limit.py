"""
Rate Limiting Module

Sliding-window rate limiting for the manual job triggers, backed by the
shared Redis client. Falls back to in-memory storage when Redis is not
available (single process only).
"""

import logging
import time

from fastapi import HTTPException, status

from app.core.redis import get_redis

logger = logging.getLogger(__name__)

# Fallback storage: {key: [timestamp, ...]}
_memory_store: dict[str, list[float]] = {}


class RateLimitExceeded(HTTPException):
    """Exception raised when rate limit is exceeded."""

    def __init__(self, limit: int, window_seconds: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "ok": False,
                "error": "RATE_LIMIT_EXCEEDED",
                "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                "retry_after_seconds": window_seconds,
            },
            headers={"Retry-After": str(window_seconds)},
        )


async def _check_rate_limit_redis(client, key: str, limit: int, window_seconds: int) -> bool:
    """
    Check a rate limit using a Redis sorted set.

    Returns:
        True if the request is allowed, False if the limit is exceeded
    """
    now = time.time()

    pipe = client.pipeline()
    pipe.zremrangebyscore(key, 0, now - window_seconds)
    pipe.zcard(key)
    pipe.zadd(key, {str(now): now})
    pipe.expire(key, window_seconds)
    results = await pipe.execute()

    return results[1] < limit


def _check_rate_limit_memory(key: str, limit: int, window_seconds: int) -> bool:
    """Check a rate limit against the in-process store."""
    now = time.time()
    window_start = now - window_seconds

    hits = [ts for ts in _memory_store.get(key, []) if ts > window_start]
    if len(hits) >= limit:
        _memory_store[key] = hits
        return False

    hits.append(now)
    _memory_store[key] = hits
    return True


async def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Check whether a request is within its rate limit.

    Args:
        key: Unique key, e.g. "cron:mark-overdue:<admin id>"
        limit: Maximum requests allowed in the window
        window_seconds: Window length in seconds

    Returns:
        True if the request is allowed, False if the limit is exceeded
    """
    client = get_redis()

    if client is not None:
        try:
            return await _check_rate_limit_redis(client, f"rate_limit:{key}", limit, window_seconds)
        except Exception as e:
            logger.warning(f"Redis rate limit check failed, using memory: {e}")

    return _check_rate_limit_memory(key, limit, window_seconds)
