from __future__ import annotations
import json
import logging
from typing import Awaitable, Callable, List

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import get_settings
from .redis import get_redis

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[List[dict]]]


class CatalogCache:
    """
    Read-through cache for catalog listings shown to every user.

    Entries are JSON lists keyed per collection. Writers must call the
    matching ``invalidate_*`` after committing a create/update/delete of the
    underlying rows (including stock changes for rewards). Redis outages fall
    back to the loader, they never fail the request.
    """

    REWARDS = "catalog:rewards"
    DESTINATIONS = "catalog:destinations"

    def __init__(
        self,
        client_factory: Callable[[], redis.Redis] = get_redis,
        *,
        ttl_seconds: int | None = None,
        enabled: bool | None = None,
    ):
        settings = get_settings()
        self._client_factory = client_factory
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds
        self.enabled = settings.cache_enabled if enabled is None else enabled

    async def get_or_load(self, key: str, loader: Loader) -> List[dict]:
        if not self.enabled:
            return await loader()
        r = self._client_factory()
        try:
            raw = await r.get(key)
        except RedisError as exc:
            logger.warning("cache read failed for %s: %s", key, exc)
            return await loader()
        if raw is not None:
            return json.loads(raw)
        data = await loader()
        try:
            await r.set(key, json.dumps(data, default=str), ex=self.ttl_seconds)
        except RedisError as exc:
            logger.warning("cache write failed for %s: %s", key, exc)
        return data

    async def invalidate(self, *keys: str) -> None:
        if not self.enabled or not keys:
            return
        try:
            await self._client_factory().delete(*keys)
        except RedisError as exc:
            # entries still expire through their TTL
            logger.warning("cache invalidation failed for %s: %s", keys, exc)

    async def invalidate_rewards(self) -> None:
        await self.invalidate(self.REWARDS)

    async def invalidate_destinations(self) -> None:
        # nearby reward lookups depend on destination rows as well
        await self.invalidate(self.DESTINATIONS, self.REWARDS)


_cache: CatalogCache | None = None
def get_catalog_cache() -> CatalogCache:
    global _cache
    if _cache is None:
        _cache = CatalogCache()
    return _cache
