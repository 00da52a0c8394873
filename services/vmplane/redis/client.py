"""
Redis client management for vmplane.

Redis backs the job queues, the per-VM generation locks and the provisioning
progress log. Follows the same lifecycle pattern as db/session.py.
"""

import redis.asyncio as aioredis

from vmplane.config import settings
from vmplane.logging_config import get_logger

logger = get_logger(__name__)

# Module-level client reference, initialized at process startup
_redis: aioredis.Redis | None = None


async def init_redis() -> None:
    """Initialize Redis connection pool."""
    global _redis  # noqa: PLW0603
    logger.info("Initializing Redis connection")
    # Blocking queue reads hold a connection for reserve_timeout_seconds;
    # the socket timeout must outlast them.
    _redis = aioredis.from_url(
        str(settings.redis_url),
        decode_responses=True,
        socket_timeout=settings.queue.reserve_timeout_seconds + 10,
    )
    await _redis.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    """Close Redis connection pool."""
    global _redis  # noqa: PLW0603
    if _redis is not None:
        logger.info("Closing Redis connection pool")
        await _redis.aclose()
        _redis = None


def get_redis_client() -> aioredis.Redis:
    """Return the Redis client. Raises if not initialized."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized; call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    """Check Redis health for readiness probe."""
    try:
        if _redis is None:
            return False
        await _redis.ping()
        return True
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        return False
