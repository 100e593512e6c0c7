"""Shared Redis connection for change notifications; opened on first use, closed at shutdown."""
import redis.asyncio as redis

from quickcare.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        # pub/sub payloads are JSON text
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
