"""Redis cache tier for resolved links.

Flow Diagram — read-through lookup
==================================
::
    ┌─────────────┐
    │ get(domain, │
    │ address)    │
    └──────┬──────┘
           ▼
    ┌─────────────┐  error / bad payload
    │ GET replica │──────────────────────┐
    └──────┬──────┘                      │
    HIT?   │                             ▼
    ┌──────┴─────┐                 ┌───────────┐
    │ YES        │ NO              │ log, miss │
    ▼            ▼                 └───────────┘
┌─────────┐  ┌──────────────┐
│ Return  │  │ caller reads │
│ payload │  │ store, set() │
└─────────┘  └──────────────┘

Key Behaviours
===============
- Keys are ``link:{address}`` on the default domain and
  ``link:{domain}:{address}`` on custom domains.
- Reads go to the replica client, writes and deletes to the primary.
- The cache is never authoritative: any transport error or undecodable value
  is logged and reported as a miss so the caller falls through to the store.
- ``invalidate`` is awaited by every mutation before it is acknowledged.
"""

import logging

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError
from redis.exceptions import RedisError

from shortlink.schemas import CachedLinkPayload

__all__ = ["LinkCache", "cache_key"]

CACHE_HITS_TOTAL = Counter(
    "shortlink_cache_hits_total",
    "Total cache hits for link lookups",
)
CACHE_MISSES_TOTAL = Counter(
    "shortlink_cache_misses_total",
    "Total cache misses for link lookups",
)
CACHE_ERRORS_TOTAL = Counter(
    "shortlink_cache_errors_total",
    "Cache operations that failed and fell through to the store",
    ["operation"],
)


def cache_key(domain: str | None, address: str) -> str:
    if domain:
        return f"link:{domain.lower()}:{address}"
    return f"link:{address}"


class LinkCache:
    def __init__(
        self,
        writer: redis.Redis,
        reader: redis.Redis | None = None,
        ttl_seconds: int = 300,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._writer = writer
        self._reader = reader if reader is not None else writer
        self._ttl = ttl_seconds
        self._logger = logger or logging.getLogger("shortlink.cache")

    async def get(self, domain: str | None, address: str) -> CachedLinkPayload | None:
        key = cache_key(domain, address)
        try:
            cached = await self._reader.get(key)
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="get").inc()
            self._logger.warning(f"Cache read failed for {key}, falling back to store: {exc}")
            return None

        if not cached:
            CACHE_MISSES_TOTAL.inc()
            return None

        try:
            payload = CachedLinkPayload.model_validate_json(cached)
        except ValidationError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="decode").inc()
            self._logger.error(f"Cache deserialization error for {key}: {exc}")
            return None

        CACHE_HITS_TOTAL.inc()
        return payload

    async def set(
        self, domain: str | None, address: str, link: CachedLinkPayload, ttl: int | None = None
    ) -> None:
        key = cache_key(domain, address)
        try:
            await self._writer.setex(key, ttl or self._ttl, link.model_dump_json())
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="set").inc()
            self._logger.warning(f"Cache write failed for {key}: {exc}")

    async def invalidate(self, domain: str | None, address: str) -> None:
        key = cache_key(domain, address)
        try:
            await self._writer.delete(key)
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="invalidate").inc()
            self._logger.error(f"Cache invalidation failed for {key}: {exc}")

    async def invalidate_many(self, keys: list[tuple[str | None, str]]) -> None:
        if not keys:
            return
        names = [cache_key(domain, address) for domain, address in keys]
        try:
            await self._writer.delete(*names)
        except RedisError as exc:
            CACHE_ERRORS_TOTAL.labels(operation="invalidate").inc()
            self._logger.error(f"Cache invalidation failed for {len(names)} keys: {exc}")

    async def ping(self) -> None:
        await self._writer.ping()
