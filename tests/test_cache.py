from datetime import timedelta

import pytest

from cryptotracker.services.cache import TimedCache, TimedMapCache


def test_timed_cache_expires_after_ttl(clock):
    cache = TimedCache(timedelta(hours=6), clock)
    cache.set("value")
    clock.advance(hours=5, minutes=59)
    assert cache.get() == "value"
    clock.advance(minutes=1)
    assert cache.get() is None
    assert cache.get_stale() == "value"
    assert cache.get(max_age=timedelta(hours=12)) == "value"


def test_timed_cache_invalidate(clock):
    cache = TimedCache(clock=clock)
    cache.set(1)
    cache.invalidate()
    assert cache.get() is None
    assert cache.entry is None


@pytest.mark.asyncio
async def test_get_or_compute_runs_once(clock):
    cache = TimedCache(timedelta(minutes=10), clock)
    calls = []

    async def compute():
        calls.append(1)
        return len(calls)

    assert await cache.get_or_compute(compute) == 1
    assert await cache.get_or_compute(compute) == 1
    clock.advance(minutes=10)
    assert await cache.get_or_compute(compute) == 2


def test_map_cache_per_key(clock):
    cache = TimedMapCache(timedelta(hours=8), clock)
    cache.set("bitcoin", 1)
    clock.advance(hours=4)
    cache.set("ethereum", 2)
    clock.advance(hours=4)
    assert cache.get("bitcoin") is None
    assert cache.get("ethereum") == 2
    assert cache.get_stale("bitcoin") == 1
    assert "bitcoin" in cache
    assert len(cache) == 2

    cache.invalidate("bitcoin")
    assert "bitcoin" not in cache
    cache.invalidate()
    assert len(cache) == 0
