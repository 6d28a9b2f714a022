"""
Redis client for the feature flag cache.

Redis only ever holds copies of feature flag rows; the database stays the
source of truth. Timeouts are short because every cache miss or error falls
back to a database read.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError
from backend.app.core.config import settings

logger = logging.getLogger("marketplace_admin.redis")

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
    socket_timeout=settings.redis_socket_timeout_seconds,
    socket_connect_timeout=settings.redis_socket_timeout_seconds,
)


async def get_redis():
    """FastAPI dependency for the flag cache client."""
    return redis_client


async def ping_redis() -> bool:
    """
    Check the flag cache for /health.

    Returns:
        True if Redis answered, False otherwise (flags are then served
        from the database)
    """
    try:
        return bool(await redis_client.ping())
    except (RedisError, OSError) as exc:
        logger.warning("Flag cache unreachable", extra={"error": str(exc)})
        return False


async def close_redis() -> None:
    """Release the connection pool on shutdown."""
    await redis_client.aclose()
