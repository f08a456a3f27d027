"""Best-effort Redis cache for link lookups and analytics results.

``CacheStore`` wraps a ``redis.asyncio`` client and is the only code that
talks to Redis for caching. Every call swallows backend failures (connection
refused, timeout, malformed payload), logs a warning and reports a miss, so
callers always fall through to the database.

Key Layout
==========
::
    link:lookup:{code}                           LinkSnapshot      1h
    lock:link:{code}                             stampede lock     3s
    analytics:overview:{code}                    OverviewStats     10m
    analytics:timeline:{code}:{interval}:{days}  TimelineStats     5m
    analytics:timeline-keys:{code}               SET of the timeline keys above
    analytics:locations:{code}                   LocationStats     10m
    analytics:devices:{code}                     DeviceStats       10m
    analytics:referrers:{code}                   ReferrerStats     10m
    analytics:heatmap:{code}:{days}              HeatmapStats      5m

Cache-Aside Flow: get_or_load()
================================
::
    ┌─────────────┐
    │ GET key     │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌──────────┐
│ loader()│  │ validate │
│ (DB)    │  │ JSON     │
└────┬────┘  └──────────┘
     ▼
┌─────────┐
│ SETEX   │
│ (TTL)   │
└─────────┘

Key Behaviours
===============
- Invalidation deletes an enumerated key list; there is no flush.
- Timeline and heatmap keys vary by query parameters, so each write also
  records the key in a per-code registry set that invalidation reads.
- A payload that fails validation is deleted and treated as a miss.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from shortlinks.enums import CacheStatus

__all__ = ["CacheStore", "lookup_key", "lock_key"]

logger = logging.getLogger("shortlinks.cache")

ModelT = TypeVar("ModelT", bound=BaseModel)

CACHE_REQUESTS_TOTAL = Counter(
    "shortlinks_cache_requests_total",
    "Cache reads by namespace and outcome",
    ["namespace", "cache_hit"],
)
CACHE_ERRORS_TOTAL = Counter(
    "shortlinks_cache_errors_total",
    "Cache backend failures absorbed by the cache layer",
    ["operation"],
)

CACHE_FAILURES = (RedisError, OSError, TimeoutError)

ANALYTICS_FIXED_NAMESPACES = ("overview", "locations", "devices", "referrers")


def lookup_key(short_code: str) -> str:
    return f"link:lookup:{short_code}"


def lock_key(short_code: str) -> str:
    return f"lock:link:{short_code}"


def analytics_key(namespace: str, short_code: str, *params: object) -> str:
    suffix = "".join(f":{p}" for p in params)
    return f"analytics:{namespace}:{short_code}{suffix}"


def analytics_registry_key(short_code: str) -> str:
    return f"analytics:timeline-keys:{short_code}"


class CacheStore:
    """Thin, failure-tolerant facade over a Redis client."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def get_model(self, key: str, model: type[ModelT], namespace: str = "link") -> ModelT | None:
        try:
            raw = await self._client.get(key)
        except CACHE_FAILURES as exc:
            self._record_failure("get", key, exc)
            return None

        if raw is None:
            CACHE_REQUESTS_TOTAL.labels(namespace=namespace, cache_hit=CacheStatus.MISS).inc()
            return None

        try:
            value = model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(f"Discarding malformed cache entry {key}: {exc}")
            await self.delete(key)
            CACHE_REQUESTS_TOTAL.labels(namespace=namespace, cache_hit=CacheStatus.MISS).inc()
            return None

        CACHE_REQUESTS_TOTAL.labels(namespace=namespace, cache_hit=CacheStatus.HIT).inc()
        return value

    async def set_model(self, key: str, value: BaseModel, ttl_seconds: int) -> bool:
        try:
            await self._client.setex(key, ttl_seconds, value.model_dump_json())
            return True
        except CACHE_FAILURES as exc:
            self._record_failure("set", key, exc)
            return False

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except CACHE_FAILURES as exc:
            self._record_failure("delete", ",".join(keys), exc)
            return 0

    async def acquire_lock(self, key: str, ttl_seconds: int) -> bool:
        """SET NX lock. A broken backend reports the lock as taken by us."""
        try:
            return bool(await self._client.set(key, "1", ex=ttl_seconds, nx=True))
        except CACHE_FAILURES as exc:
            self._record_failure("lock", key, exc)
            return True

    async def get_or_load(
        self,
        key: str,
        model: type[ModelT],
        loader: Callable[[], Awaitable[ModelT]],
        ttl_seconds: int,
        *,
        namespace: str,
        short_code: str | None = None,
    ) -> ModelT:
        cached = await self.get_model(key, model, namespace=namespace)
        if cached is not None:
            return cached

        value = await loader()
        if await self.set_model(key, value, ttl_seconds) and short_code is not None:
            await self._register(short_code, key)
        return value

    async def invalidate_link(self, short_code: str) -> None:
        await self.delete(lookup_key(short_code))

    async def invalidate_analytics(self, short_code: str) -> None:
        registry = analytics_registry_key(short_code)
        keys = [analytics_key(ns, short_code) for ns in ANALYTICS_FIXED_NAMESPACES]
        try:
            keys.extend(await self._client.smembers(registry))
        except CACHE_FAILURES as exc:
            self._record_failure("smembers", registry, exc)
        keys.append(registry)
        await self.delete(*keys)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def _register(self, short_code: str, key: str) -> None:
        registry = analytics_registry_key(short_code)
        try:
            await self._client.sadd(registry, key)
        except CACHE_FAILURES as exc:
            self._record_failure("sadd", registry, exc)

    @staticmethod
    def _record_failure(operation: str, key: str, exc: Exception) -> None:
        CACHE_ERRORS_TOTAL.labels(operation=operation).inc()
        logger.warning(f"Cache {operation} failed for {key}: {exc}")
