"""Redis client for the company -> tenant lookup cache.

Redis holds nothing but the immutable company -> tenant mapping written by
tenancy/resolver.py. Identity contexts and role decisions are never cached,
and the app runs without Redis when TENANT_CACHE_TTL_SECONDS is 0.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.challengehub.config import Settings, get_settings

# Cache lookups give up after this long and fall back to the database.
_SOCKET_TIMEOUT_SECONDS = 2.0

_client: aioredis.Redis | None = None


def get_redis(settings: Settings | None = None) -> aioredis.Redis:
    """Return the shared client, creating it on first use."""
    global _client
    if _client is None:
        settings = settings or get_settings()
        _client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=_SOCKET_TIMEOUT_SECONDS,
        )
    return _client


def tenant_cache(settings: Settings) -> aioredis.Redis | None:
    """Client for the tenant cache, or None when caching is disabled."""
    if settings.TENANT_CACHE_TTL_SECONDS <= 0:
        return None
    return get_redis(settings)


async def redis_status(settings: Settings) -> tuple[str, str | None]:
    """Readiness of the tenant cache as ``(status, error)``.

    status is ``disabled`` when caching is off, else ``ok`` or ``error``.
    """
    client = tenant_cache(settings)
    if client is None:
        return "disabled", None
    try:
        if not await client.ping():
            return "error", "PING did not return PONG"
    except (RedisError, OSError) as exc:
        return "error", str(exc)
    return "ok", None


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
