"""Click ingestion: enrichment, persistence, retries and dead letters.

Two layers:

``ClickIngestionService.ingest``
    Processes one ``ClickMessage`` end to end: user-agent parsing, IP
    geolocation, click-counter increment and click insert in a single
    transaction, then lookup and analytics cache invalidation.

``ClickConsumer.handle``
    Wraps ``ingest`` with the delivery state machine::

        Processing ──► Persisted
                   ├─► Duplicate        (event_id already stored)
                   ├─► Retrying         (attempt < max; parked in a sorted set)
                   └─► DeadLettered     (attempt == max; XADD to the dead-letter stream)

Retries are parked in a Redis sorted set scored by their due time
(``base * 2 ** (attempt - 1)`` seconds from now) instead of being retried
inline, so one failing message never holds up the rest of a batch.

How to Use
===========
**Build once per process**::
    service = ClickIngestionService(session_factory, cache, settings, UserAgentParser(), geo)
    consumer = ClickConsumer(service.ingest, redis_client, settings)

**Handle a batch concurrently**::
    outcomes = await consumer.handle_many(messages)

**Re-drive parked retries that are due**::
    await consumer.process_due_retries()
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shortlinks.cache import CacheStore
from shortlinks.config import Settings
from shortlinks.enums import ClickOutcome
from shortlinks.geoip import GeoIpResolver, GeoLocation
from shortlinks.link_store import LinkStore
from shortlinks.models import Click
from shortlinks.schemas import ClickMessage
from shortlinks.timeutil import utcnow
from shortlinks.user_agent import UserAgentParser

__all__ = ["ClickIngestionService", "ClickConsumer"]

logger = logging.getLogger("shortlinks.ingestion")

CLICKS_INGESTED_TOTAL = Counter(
    "shortlinks_clicks_ingested_total",
    "Click messages handled by the ingestion pipeline, by outcome",
    ["outcome"],
)

IngestFn = Callable[[ClickMessage], Awaitable[ClickOutcome]]


class ClickIngestionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheStore,
        settings: Settings,
        user_agents: UserAgentParser,
        geo: GeoIpResolver,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._settings = settings
        self._user_agents = user_agents
        self._geo = geo

    async def ingest(self, message: ClickMessage) -> ClickOutcome:
        """Persist one click exactly once per ``event_id``.

        Raises whatever the database raises; the consumer decides whether
        that means a retry or a dead letter.
        """
        event = message.event
        agent = self._user_agents.parse(event.user_agent)
        location = await self._geo.resolve(event.ip_address) or GeoLocation()

        async with self._session_factory() as session:
            if await self._already_stored(session, message.event_id):
                return ClickOutcome.DUPLICATE

            store = LinkStore(session, self._cache, self._settings)
            short_code = await store.increment_clicks(event.link_id, commit=False)
            session.add(
                Click(
                    event_id=message.event_id,
                    link_id=event.link_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    referer=event.referer or None,
                    browser=agent.browser,
                    browser_version=agent.browser_version,
                    os=agent.os,
                    os_version=agent.os_version,
                    device_type=agent.device_type,
                    country=location.country,
                    city=location.city,
                    latitude=location.latitude,
                    longitude=location.longitude,
                    timezone=location.timezone,
                    created_at=event.clicked_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if await self._already_stored(session, message.event_id):
                    return ClickOutcome.DUPLICATE
                raise

        await store.invalidate(short_code)
        await self._cache.invalidate_analytics(short_code)
        logger.debug(f"Click {message.event_id} persisted for {short_code}")
        return ClickOutcome.PERSISTED

    @staticmethod
    async def _already_stored(session: AsyncSession, event_id: str) -> bool:
        found = await session.scalar(select(Click.id).where(Click.event_id == event_id))
        return found is not None


class ClickConsumer:
    def __init__(self, ingest: IngestFn, client: redis.Redis, settings: Settings) -> None:
        self._ingest = ingest
        self._client = client
        self._settings = settings
        self._semaphore = asyncio.Semaphore(settings.INGESTION_CONCURRENCY)

    async def handle(self, message: ClickMessage) -> ClickOutcome:
        try:
            outcome = await self._ingest(message)
        except Exception as exc:
            outcome = await self._on_failure(message, exc)
        CLICKS_INGESTED_TOTAL.labels(outcome=outcome).inc()
        return outcome

    async def handle_many(self, messages: list[ClickMessage]) -> list[ClickOutcome]:
        """Handle messages concurrently; re-raises the first infrastructure error after all finish."""

        async def bounded(message: ClickMessage) -> ClickOutcome:
            async with self._semaphore:
                return await self.handle(message)

        results = await asyncio.gather(*(bounded(m) for m in messages), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
        return list(results)

    async def due_retries(self, now: float | None = None) -> list[ClickMessage]:
        now = time.time() if now is None else now
        raw = await self._client.zrangebyscore(
            self._settings.CLICK_RETRY_KEY, "-inf", now, start=0, num=self._settings.INGESTION_BATCH_SIZE
        )
        messages: list[ClickMessage] = []
        for item in raw:
            # ZREM decides which worker owns the retry.
            if not await self._client.zrem(self._settings.CLICK_RETRY_KEY, item):
                continue
            try:
                messages.append(ClickMessage.model_validate_json(item))
            except ValidationError:
                logger.warning("invalid parked click payload", exc_info=True)
        return messages

    async def process_due_retries(self, now: float | None = None) -> list[ClickOutcome]:
        messages = await self.due_retries(now)
        if not messages:
            return []
        return await self.handle_many(messages)

    def retry_delay(self, attempt: int) -> float:
        return self._settings.CLICK_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))

    async def _on_failure(self, message: ClickMessage, exc: Exception) -> ClickOutcome:
        if message.attempt >= self._settings.CLICK_MAX_ATTEMPTS:
            await self._dead_letter(message, exc)
            return ClickOutcome.DEAD_LETTERED

        delay = self.retry_delay(message.attempt)
        retry = message.next_attempt()
        await self._client.zadd(self._settings.CLICK_RETRY_KEY, {retry.model_dump_json(): time.time() + delay})
        logger.warning(
            f"Click {message.event_id} failed on attempt {message.attempt}, retrying in {delay:.1f}s: {exc}",
            extra={"event_id": message.event_id, "attempt": message.attempt},
        )
        return ClickOutcome.RETRYING

    async def _dead_letter(self, message: ClickMessage, exc: Exception) -> None:
        payload = message.model_dump_json()
        await self._client.xadd(
            self._settings.CLICK_DEAD_LETTER_STREAM,
            {
                "payload": payload,
                "attempts": str(message.attempt),
                "error": f"{type(exc).__name__}: {exc}",
                "failed_at": utcnow().isoformat(),
            },
        )
        logger.error(
            f"Click {message.event_id} dead-lettered after {message.attempt} attempts: {exc}",
            extra={"event_id": message.event_id, "attempts": message.attempt, "payload": payload},
            exc_info=exc,
        )
