"""
Process-wide Redis connection for the rate-limit and idempotency stores.

get_redis() returns None when Redis is disabled or unreachable at startup;
the container then keeps both stores in process.
"""

from typing import Optional

import redis.asyncio as redis

from booking_lifecycle.core.config import get_settings
from booking_lifecycle.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    global _redis_client
    settings = get_settings()
    if not settings.REDIS_ENABLED:
        return None
    if _redis_client is not None:
        return _redis_client

    client = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=settings.REDIS_TIMEOUT_SECONDS,
        socket_timeout=settings.REDIS_TIMEOUT_SECONDS,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except (redis.RedisError, OSError) as e:
        logger.error("redis_connection_failed", error=str(e))
        await client.aclose()
        return None

    logger.info("redis_connected", url=settings.REDIS_URL.rsplit("@", 1)[-1])
    _redis_client = client
    return _redis_client


async def redis_status() -> str:
    """disabled, ok or unreachable; reported by /health."""
    if _redis_client is None:
        return "disabled" if not get_settings().REDIS_ENABLED else "unreachable"
    try:
        await _redis_client.ping()
    except (redis.RedisError, OSError):
        return "unreachable"
    return "ok"


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
