"""
tessera_analytics/tests/test_cache_store.py

TTL cache semantics (memory and Redis-with-fallback).
"""

import fnmatch

import pytest

from tessera_analytics.core.metrics import cache_backend_fallbacks_total
from tessera_analytics.features.cache.store import (
    CacheKeyGenerator,
    RedisTTLCache,
    TTLCache,
    build_cache,
)
from tessera_analytics.features.resilience.circuit_breaker import CircuitBreaker


@pytest.fixture
def cache(clock):
    return TTLCache(max_size=3, default_ttl=60, time_fn=clock)


class TestTTLCacheBasics:
    @pytest.mark.asyncio
    async def test_get_returns_stored_value_until_ttl_passes(self, cache, clock):
        await cache.set("org:a:patterns:week:aggregated", {"total": 3}, ttl=10)

        clock.advance(10)
        assert await cache.get("org:a:patterns:week:aggregated") == {"total": 3}

        clock.advance(0.001)
        assert await cache.get("org:a:patterns:week:aggregated") is None
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_default_ttl_applies_when_none_given(self, cache, clock):
        await cache.set("k", 1)
        clock.advance(61)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_full_cache_evicts_oldest_entry(self, cache, clock):
        for key in ("a", "b", "c"):
            await cache.set(key, key)
            clock.advance(1)

        await cache.set("d", "d")

        assert await cache.get("a") is None
        assert await cache.get("d") == "d"
        assert cache.size == 3
        assert cache.get_stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_overwriting_existing_key_does_not_evict(self, cache, clock):
        for key in ("a", "b", "c"):
            await cache.set(key, key)
            clock.advance(1)

        await cache.set("b", "updated")

        assert cache.size == 3
        assert await cache.get("a") == "a"
        assert await cache.get("b") == "updated"
        assert cache.get_stats()["evictions"] == 0

    @pytest.mark.asyncio
    async def test_stats_count_hits_and_misses(self, cache):
        await cache.set("k", 1)
        await cache.get("k")
        await cache.get("missing")

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["backend"] == "memory"
        assert stats["max_size"] == 3

    @pytest.mark.asyncio
    async def test_clear_resets_entries_and_stats(self, cache):
        await cache.set("k", 1)
        await cache.get("k")
        await cache.clear()

        assert cache.size == 0
        assert cache.get_stats()["hits"] == 0


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_removes_regex_matches_and_returns_count(self):
        cache = TTLCache(max_size=10)
        await cache.set("org:a:patterns:week:aggregated", 1)
        await cache.set("org:a:patterns:month:aggregated", 2)
        await cache.set("org:a:health:departments:daily", 3)

        removed = await cache.invalidate("patterns")

        assert removed == 2
        assert await cache.get("org:a:health:departments:daily") == 3

    @pytest.mark.asyncio
    async def test_invalidate_prefix_is_anchored_and_literal(self):
        cache = TTLCache(max_size=10)
        await cache.set("org:a.b:health:daily", 1)
        await cache.set("org:aXb:health:daily", 2)
        await cache.set("user:1:org:a.b:health:daily", 3)

        removed = await cache.invalidate_prefix("org:a.b:")

        assert removed == 1
        assert await cache.get("org:aXb:health:daily") == 2
        assert await cache.get("user:1:org:a.b:health:daily") == 3

    @pytest.mark.asyncio
    async def test_invalidate_organization_and_user(self):
        cache = TTLCache(max_size=10)
        await cache.set(CacheKeyGenerator.organizational_health("o1", "daily"), 1)
        await cache.set(CacheKeyGenerator.interventions("o1"), 2)
        await cache.set(CacheKeyGenerator.user_analytics("u1", "week"), 3)

        assert await cache.invalidate_organization("o1") == 2
        assert await cache.invalidate_user("u1") == 1
        assert cache.size == 0


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired_entries(self, cache, clock):
        await cache.set("short", 1, ttl=5)
        await cache.set("long", 2, ttl=100)

        clock.advance(6)

        assert cache.sweep() == 1
        assert cache.size == 1
        assert await cache.get("long") == 2


class TestGetOrSet:
    @pytest.mark.asyncio
    async def test_fetcher_runs_once_and_result_is_cached(self, cache):
        calls = []

        async def fetch():
            calls.append(1)
            return {"value": 42}

        assert await cache.get_or_set("k", fetch) == {"value": 42}
        assert await cache.get_or_set("k", fetch) == {"value": 42}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_none_result_is_not_cached(self, cache):
        calls = []

        async def fetch():
            calls.append(1)
            return None

        assert await cache.get_or_set("k", fetch) is None
        assert await cache.get_or_set("k", fetch) is None
        assert len(calls) == 2
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_fetcher_error_propagates_and_nothing_is_stored(self, cache):
        async def fetch():
            raise RuntimeError("source down")

        with pytest.raises(RuntimeError):
            await cache.get_or_set("k", fetch)
        assert cache.size == 0


class FailingRedis:
    """Every command raises, as an unreachable server would."""

    async def get(self, key):
        raise ConnectionError("redis unavailable")

    async def setex(self, key, ttl, value):
        raise ConnectionError("redis unavailable")

    async def scan_iter(self, match=None):
        raise ConnectionError("redis unavailable")
        yield  # pragma: no cover

    async def delete(self, *keys):
        raise ConnectionError("redis unavailable")

    async def aclose(self):
        return None


class FakeRedis:
    """Dict-backed subset of redis.asyncio used by RedisTTLCache."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)
        return len(keys)

    async def aclose(self):
        return None


class TestRedisTTLCache:
    @pytest.mark.asyncio
    async def test_values_are_namespaced_json_with_ttl(self):
        client = FakeRedis()
        cache = RedisTTLCache(client, default_ttl=300)

        await cache.set("org:o1:health:daily", {"score": 7.5}, ttl=86400)

        assert client.ttls["analytics:org:o1:health:daily"] == 86400
        assert await cache.get("org:o1:health:daily") == {"score": 7.5}

    @pytest.mark.asyncio
    async def test_invalidate_prefix_deletes_matching_keys(self):
        client = FakeRedis()
        cache = RedisTTLCache(client)
        await cache.set("org:o1:patterns:week:aggregated", 1)
        await cache.set("org:o1:health:daily", 2)

        removed = await cache.invalidate_prefix("org:o1:patterns:")

        assert removed == 1
        assert list(client.data) == ["analytics:org:o1:health:daily"]

    @pytest.mark.asyncio
    async def test_failing_backend_falls_back_to_memory(self, clock):
        breaker = CircuitBreaker("redis_cache", max_failures=2, time_fn=clock)
        cache = RedisTTLCache(FailingRedis(), breaker=breaker, time_fn=clock)
        before = cache_backend_fallbacks_total.value({"op": "set"})

        await cache.set("k", {"v": 1})
        assert await cache.get("k") == {"v": 1}

        assert cache_backend_fallbacks_total.value({"op": "set"}) == before + 1
        assert breaker.state.value == "open"
        # Open breaker still serves from memory without touching the client
        assert await cache.get("k") == {"v": 1}
        assert await cache.invalidate_prefix("k") == 1

    @pytest.mark.asyncio
    async def test_invalidation_also_drops_entries_written_during_outage(self, clock):
        breaker = CircuitBreaker("redis_cache", max_failures=10, time_fn=clock)
        cache = RedisTTLCache(FailingRedis(), breaker=breaker, time_fn=clock)
        await cache.set("org:o1:health:departments:daily", {"score": "stale"})
        await cache.set("org:o1:patterns:week:aggregated", {"total": 1})

        cache.client = FakeRedis()
        await cache.set("org:o1:health:weekly", {"score": 8.0})
        removed = await cache.invalidate_prefix("org:o1:health:")
        assert removed == 2

        cache.client = FailingRedis()
        assert await cache.get("org:o1:health:departments:daily") is None
        assert await cache.get("org:o1:patterns:week:aggregated") == {"total": 1}

        cache.client = FakeRedis()
        assert await cache.invalidate("patterns") == 1
        cache.client = FailingRedis()
        assert await cache.get("org:o1:patterns:week:aggregated") is None


class TestBuildCache:
    def test_memory_cache_without_redis(self, settings):
        cache = build_cache(settings)
        assert cache.backend == "memory"
        assert cache.max_size == settings.CACHE_MAX_SIZE

    def test_redis_cache_with_client(self, settings):
        cache = build_cache(settings, redis_client=FakeRedis())
        assert isinstance(cache, RedisTTLCache)
        assert cache.get_stats()["backend"] == "redis"
