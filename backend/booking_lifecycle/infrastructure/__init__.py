"""
Shared clients for external systems. The Redis connection backs the
rate-limit and idempotency stores when REDIS_ENABLED is set.
"""

from .redis_client import close_redis, get_redis, redis_status

__all__ = ['get_redis', 'close_redis', 'redis_status']
