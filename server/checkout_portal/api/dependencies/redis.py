from collections.abc import AsyncIterator

from redis.asyncio import Redis

from checkout_portal.core.config import get_settings


async def get_redis_client() -> AsyncIterator[Redis | None]:
    """
    Redis client for per-session provisioning locks.

    Connection problems surface lazily on first command; callers treat a
    ``RedisError`` there as "no lock available".
    """
    settings = get_settings()
    if not settings.redis_url:
        yield None
        return
    client = Redis.from_url(settings.redis_url, socket_connect_timeout=1, socket_timeout=1)
    try:
        yield client
    finally:
        await client.aclose()
