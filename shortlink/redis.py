"""Redis client construction for the link cache.

Key Behaviours
===============
- Clients are created lazily on first access and reused across requests.
- The read client points at ``REDIS_REPLICA_URL`` when one is configured,
  otherwise at the primary.
- UTF-8 encoding with ``decode_responses`` so cached payloads come back as str.

Functions:
    get_redis():  Primary (write) client.
    get_redis_read():  Replica (read) client.
    close_redis():  Cleanup function for shutdown.
"""

import redis.asyncio as redis

from shortlink.config import get_settings

__all__ = ["close_redis", "get_redis", "get_redis_read"]

settings = get_settings()

# Write client, always the primary. Used for SETEX and DEL.
redis_client: redis.Redis | None = None

# Read-only client for cache GETs on the redirect hot path.
redis_read_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_client


async def get_redis_read() -> redis.Redis:
    global redis_read_client
    if not settings.REDIS_REPLICA_URL:
        return await get_redis()
    if redis_read_client is None:
        redis_read_client = redis.from_url(
            settings.REDIS_REPLICA_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_read_client


async def close_redis() -> None:
    global redis_client, redis_read_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
    if redis_read_client is not None:
        await redis_read_client.aclose()
        redis_read_client = None
