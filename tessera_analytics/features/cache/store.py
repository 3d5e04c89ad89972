"""
TTL cache for analytics aggregates.

`TTLCache` is the in-memory store: lazy expiry on read, a periodic `sweep()`
for everything else, and oldest-first eviction once `max_size` is reached.
The eviction scan is linear in the number of entries, which caps how large
`max_size` can usefully be.

`RedisTTLCache` runs the same operations against Redis. When a Redis call
fails (or its breaker is open) that single call is served by the in-memory
store instead; nothing reconciles the two afterwards.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis

from tessera_analytics.core.metrics import (
    cache_backend_fallbacks_total,
    cache_entries,
    cache_evictions_total,
    cache_invalidated_keys_total,
    cache_lookups_total,
)
from tessera_analytics.features.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    key: str
    data: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now > self.stored_at + self.ttl


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


class TTLCache:
    backend = "memory"

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 300.0,
        *,
        monitoring=None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max(1, max_size)
        self.default_ttl = default_ttl
        self.monitoring = monitoring
        self.time_fn = time_fn
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()

    @property
    def size(self) -> int:
        return len(self._entries)

    def _hit(self) -> None:
        self._stats.hits += 1
        cache_lookups_total.inc(labels={"backend": self.backend, "result": "hit"})

    def _miss(self) -> None:
        self._stats.misses += 1
        cache_lookups_total.inc(labels={"backend": self.backend, "result": "miss"})

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._miss()
            return None
        if entry.is_expired(self.time_fn()):
            del self._entries[key]
            cache_entries.set(len(self._entries))
            self._miss()
            return None
        self._hit()
        logger.debug("cache.hit", extra={"operation": key})
        return entry.data

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_oldest()
        self._entries[key] = CacheEntry(key=key, data=value, stored_at=self.time_fn(), ttl=ttl)
        cache_entries.set(len(self._entries))
        logger.debug("cache.set", extra={"operation": key, "duration_ms": ttl * 1000})

    async def get_or_set(self, key: str, fetcher: Fetcher, ttl: Optional[float] = None) -> Any:
        """Return the cached value or compute, store and return it.

        Concurrent misses on the same key each run `fetcher`.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        logger.debug("cache.miss_fetch", extra={"operation": key})
        if self.monitoring is not None:
            value = await self.monitoring.track_operation(f"cache_fetch_{key}", fetcher)
        else:
            value = await fetcher()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def invalidate(self, pattern: str) -> int:
        """Delete every key the regular expression `pattern` matches."""
        regex = re.compile(pattern)
        doomed = [key for key in self._entries if regex.search(key)]
        for key in doomed:
            del self._entries[key]
        cache_entries.set(len(self._entries))
        cache_invalidated_keys_total.inc(amount=len(doomed))
        logger.info("cache.invalidated", extra={"operation": pattern, "status": len(doomed)})
        return len(doomed)

    async def invalidate_prefix(self, prefix: str) -> int:
        return await TTLCache.invalidate(self, "^" + re.escape(prefix))

    async def invalidate_organization(self, organization_id: str) -> int:
        return await self.invalidate_prefix(f"org:{organization_id}:")

    async def invalidate_user(self, user_id: str) -> int:
        return await self.invalidate_prefix(f"user:{user_id}:")

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda entry: entry.stored_at)
        del self._entries[oldest.key]
        self._stats.evictions += 1
        cache_evictions_total.inc()
        logger.debug("cache.evicted", extra={"operation": oldest.key})

    def sweep(self) -> int:
        now = self.time_fn()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        cache_entries.set(len(self._entries))
        if expired:
            logger.info("cache.sweep", extra={"status": len(expired)})
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        stats = self._stats.to_dict()
        stats["size"] = len(self._entries)
        stats["max_size"] = self.max_size
        stats["backend"] = self.backend
        return stats

    async def clear(self) -> None:
        self._entries.clear()
        self._stats = CacheStats()
        cache_entries.set(0)
        logger.info("cache.cleared")

    async def aclose(self) -> None:
        return None


def _glob_escape(text: str) -> str:
    return re.sub(r"([*?\[\]\\])", r"\\\1", text)


class RedisTTLCache(TTLCache):
    backend = "redis"
    namespace = "analytics:"

    def __init__(self, client: aioredis.Redis, *, breaker: Optional[CircuitBreaker] = None, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.breaker = breaker or CircuitBreaker("redis_cache")

    def _fallback(self, op: str, exc: BaseException) -> None:
        cache_backend_fallbacks_total.inc(labels={"op": op})
        logger.warning("cache.redis_fallback", extra={"operation": op, "error_code": type(exc).__name__})

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.breaker.execute(lambda: self.client.get(self.namespace + key))
        except Exception as exc:
            self._fallback("get", exc)
            return await super().get(key)
        if raw is None:
            self._miss()
            return None
        self._hit()
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        payload = json.dumps(value, default=str)
        try:
            await self.breaker.execute(
                lambda: self.client.setex(self.namespace + key, max(1, int(ttl)), payload)
            )
        except Exception as exc:
            self._fallback("set", exc)
            await super().set(key, value, ttl)

    async def _delete_matching(self, match: str) -> int:
        async def _scan_and_delete():
            keys = [key async for key in self.client.scan_iter(match=match)]
            if keys:
                await self.client.delete(*keys)
            return len(keys)

        return await self.breaker.execute(_scan_and_delete)

    async def invalidate(self, pattern: str) -> int:
        try:
            removed = await self._delete_matching(f"{self.namespace}*{pattern}*")
        except Exception as exc:
            self._fallback("invalidate", exc)
            return await super().invalidate(pattern)
        cache_invalidated_keys_total.inc(amount=removed)
        logger.info("cache.invalidated", extra={"operation": pattern, "status": removed})
        # Entries written to memory during an outage must go too
        return removed + await TTLCache.invalidate(self, pattern)

    async def invalidate_prefix(self, prefix: str) -> int:
        try:
            removed = await self._delete_matching(f"{self.namespace}{_glob_escape(prefix)}*")
        except Exception as exc:
            self._fallback("invalidate", exc)
            return await super().invalidate_prefix(prefix)
        cache_invalidated_keys_total.inc(amount=removed)
        logger.info("cache.invalidated", extra={"operation": prefix, "status": removed})
        return removed + await TTLCache.invalidate_prefix(self, prefix)

    async def clear(self) -> None:
        try:
            await self._delete_matching(f"{self.namespace}*")
        except Exception as exc:
            self._fallback("clear", exc)
        await super().clear()

    async def aclose(self) -> None:
        await self.client.aclose()


class CacheKeyGenerator:
    @staticmethod
    def behavior_patterns(organization_id: str, time_window: str, role: str) -> str:
        return f"org:{organization_id}:patterns:{time_window}:{role}"

    @staticmethod
    def organizational_health(organization_id: str, time_window: str) -> str:
        return f"org:{organization_id}:health:{time_window}"

    @staticmethod
    def interventions(organization_id: str, status: Optional[str] = None) -> str:
        suffix = f":{status}" if status else ""
        return f"org:{organization_id}:interventions{suffix}"

    @staticmethod
    def user_analytics(user_id: str, time_window: str) -> str:
        return f"user:{user_id}:analytics:{time_window}"

    @staticmethod
    def department_metrics(organization_id: str, department: str, time_window: str) -> str:
        return f"org:{organization_id}:dept:{department}:{time_window}"

    @staticmethod
    def aggregated_metrics(organization_id: str, metric: str, time_window: str) -> str:
        return f"org:{organization_id}:agg:{metric}:{time_window}"


def build_cache(settings, monitoring=None, *, redis_client: Optional[aioredis.Redis] = None, breaker: Optional[CircuitBreaker] = None, time_fn: Callable[[], float] = time.monotonic) -> TTLCache:
    """Redis-backed cache when REDIS_URL (or a client) is given, memory otherwise."""
    options = dict(
        max_size=settings.CACHE_MAX_SIZE,
        default_ttl=settings.CACHE_DEFAULT_TTL_SECONDS,
        monitoring=monitoring,
        time_fn=time_fn,
    )
    if redis_client is None and settings.REDIS_URL:
        redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    if redis_client is None:
        return TTLCache(**options)
    breaker = breaker or CircuitBreaker(
        "redis_cache",
        max_failures=settings.CIRCUIT_MAX_FAILURES,
        reset_timeout=settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
    )
    logger.info("cache.redis_enabled")
    return RedisTTLCache(redis_client, breaker=breaker, **options)
