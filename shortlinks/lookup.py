"""Cache-aside resolution of short codes for the redirect path.

Flow Diagram: resolve()
========================
::
    ┌─────────────┐
    │ GET         │
    │ link:lookup │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES ──► return LinkSnapshot
    ▼
┌──────────────┐
│ SET NX lock  │── not acquired ──► poll cache a few times
└──────┬───────┘                    (return on hit, else read DB)
       ▼
┌──────────────┐
│ SELECT link  │── none ──► NotFoundError
│ (tombstones  │
│  included)   │
└──────┬───────┘
       ▼
┌──────────────┐
│ SETEX TTL    │
│ release lock │
└──────────────┘

Key Behaviours
===============
- Tombstoned links are resolved and cached so the policy can report ``Gone``.
- Cache errors are absorbed by ``CacheStore``; resolution then reads the
  database every time and still succeeds.
- Every link mutation in ``LinkStore`` deletes the lookup key.
"""

import asyncio
import logging
import time

from prometheus_client import Counter, Histogram

from shortlinks.cache import CacheStore, lock_key, lookup_key
from shortlinks.config import Settings
from shortlinks.enums import CacheStatus
from shortlinks.exceptions import NotFoundError
from shortlinks.link_store import LinkStore
from shortlinks.schemas import LinkSnapshot

__all__ = ["LookupCache"]

logger = logging.getLogger("shortlinks.lookup")

LINK_LOOKUPS_TOTAL = Counter(
    "shortlinks_lookups_total",
    "Short-code resolutions by cache outcome",
    ["cache_hit"],
)
LINK_LOOKUP_DURATION = Histogram(
    "shortlinks_lookup_duration_seconds",
    "Time taken to resolve a short code",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)


class LookupCache:
    def __init__(self, cache: CacheStore, store: LinkStore, settings: Settings) -> None:
        self._cache = cache
        self._store = store
        self._settings = settings

    async def resolve(self, short_code: str) -> LinkSnapshot:
        """Return the link behind ``short_code``.

        Raises:
            NotFoundError: No row, live or tombstoned, has this code.
        """
        start_time = time.perf_counter()
        key = lookup_key(short_code)

        snapshot = await self._cache.get_model(key, LinkSnapshot)
        if snapshot is not None:
            LINK_LOOKUPS_TOTAL.labels(cache_hit=CacheStatus.HIT).inc()
            LINK_LOOKUP_DURATION.observe(time.perf_counter() - start_time)
            return snapshot

        LINK_LOOKUPS_TOTAL.labels(cache_hit=CacheStatus.MISS).inc()
        locked = await self._cache.acquire_lock(lock_key(short_code), self._settings.CACHE_LOCK_TTL_SECONDS)
        if not locked:
            snapshot = await self._wait_for_fill(key)
            if snapshot is not None:
                return snapshot

        try:
            link = await self._store.find_by_short_code(short_code, include_tombstoned=True)
            if link is None:
                raise NotFoundError(f"Short link '{short_code}' not found", short_code=short_code)
            snapshot = LinkSnapshot.model_validate(link)
            await self._cache.set_model(key, snapshot, self._settings.LINK_CACHE_TTL_SECONDS)
            logger.debug(f"Lookup cache filled for {short_code}")
            return snapshot
        finally:
            if locked:
                await self._cache.delete(lock_key(short_code))
            LINK_LOOKUP_DURATION.observe(time.perf_counter() - start_time)

    async def invalidate(self, short_code: str) -> None:
        await self._cache.invalidate_link(short_code)

    async def _wait_for_fill(self, key: str) -> LinkSnapshot | None:
        for _ in range(self._settings.CACHE_LOCK_RETRY_COUNT):
            await asyncio.sleep(self._settings.CACHE_LOCK_RETRY_DELAY_SECONDS)
            snapshot = await self._cache.get_model(key, LinkSnapshot)
            if snapshot is not None:
                return snapshot
        return None
