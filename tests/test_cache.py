from __future__ import annotations

import asyncio

from travel_rewards.core.cache import CatalogCache

from factories import FakeRedis


def _loader(calls):
    async def load():
        calls.append(1)
        return [{"id": "r1", "title": "Free coffee"}]
    return load


def test_read_through_and_invalidate():
    r = FakeRedis()
    cache = CatalogCache(lambda: r, ttl_seconds=60, enabled=True)
    calls = []

    async def scenario():
        first = await cache.get_or_load(CatalogCache.REWARDS, _loader(calls))
        second = await cache.get_or_load(CatalogCache.REWARDS, _loader(calls))
        assert first == second == [{"id": "r1", "title": "Free coffee"}]
        assert len(calls) == 1
        await cache.invalidate_rewards()
        await cache.get_or_load(CatalogCache.REWARDS, _loader(calls))
        assert len(calls) == 2

    asyncio.run(scenario())


def test_destination_changes_drop_both_listings():
    r = FakeRedis()
    r.store[CatalogCache.REWARDS] = "[]"
    r.store[CatalogCache.DESTINATIONS] = "[]"
    cache = CatalogCache(lambda: r, enabled=True)
    asyncio.run(cache.invalidate_destinations())
    assert r.store == {}


def test_disabled_cache_always_loads():
    r = FakeRedis()
    cache = CatalogCache(lambda: r, enabled=False)
    calls = []

    async def scenario():
        await cache.get_or_load(CatalogCache.REWARDS, _loader(calls))
        await cache.get_or_load(CatalogCache.REWARDS, _loader(calls))
        await cache.invalidate_rewards()

    asyncio.run(scenario())
    assert len(calls) == 2
    assert r.calls == []


def test_redis_outage_falls_back_to_loader():
    cache = CatalogCache(lambda: FakeRedis(fail=True), enabled=True)
    calls = []

    async def scenario():
        data = await cache.get_or_load(CatalogCache.DESTINATIONS, _loader(calls))
        await cache.invalidate_destinations()
        return data

    assert asyncio.run(scenario()) == [{"id": "r1", "title": "Free coffee"}]
    assert len(calls) == 1
