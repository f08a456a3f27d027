"""Dependency wiring for the HTTP layer.

Shared resources (engine, session factory, Redis client, Kafka producer)
live on one ``ServiceManager`` that the application lifespan builds and
stores on ``app.state.services``. Nothing is a module-level singleton, so a
test can build a manager around SQLite and an in-memory Redis double and
hand it to the app.

Dependency Graph
================
::
    Request
      ├─ get_service_manager ──► app.state.services
      ├─ get_db ───────────────► AsyncSession (per request)
      ├─ get_principal ────────► Principal (X-User-Id / X-User-Role)
      └─ get_request_context ──► RequestContext
              ├─ get_link_service ─► LinkService
              └─ get_analytics ────► AnalyticsAggregator
"""

import logging
import time
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from aiokafka import AIOKafkaProducer
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from shortlinks.analytics import AnalyticsAggregator
from shortlinks.cache import CacheStore
from shortlinks.click_queue import ClickQueue, start_producer, stop_producer
from shortlinks.config import Settings
from shortlinks.database import build_engine, build_session_factory, init_db
from shortlinks.link_service import LinkService
from shortlinks.logger import setup_logger
from shortlinks.security import Principal, principal_from_headers

__all__ = [
    "ServiceManager",
    "RequestContext",
    "get_service_manager",
    "get_db",
    "get_principal",
    "get_request_context",
    "get_link_service",
    "get_analytics",
    "client_ip_from_request",
]


class ServiceManager:
    """Process-wide resources shared by every request."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        cache_client: redis.Redis,
        producer: AIOKafkaProducer | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.cache_client = cache_client
        self.cache = CacheStore(cache_client)
        self.producer = producer
        self.queue = ClickQueue(producer, cache_client, settings)
        self.logger = setup_logger(settings.LOG_LEVEL)

    @classmethod
    async def start(cls, settings: Settings) -> "ServiceManager":
        """Connect everything and create tables."""
        engine = build_engine(settings)
        await init_db(engine)
        client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        producer = await start_producer(settings)
        return cls(settings, engine, build_session_factory(engine), client, producer)

    async def cleanup(self) -> None:
        await stop_producer(self.producer)
        await self.cache_client.aclose()
        await self.engine.dispose()


@dataclass
class RequestContext:
    """Per-request resources plus the identifiers used in log lines.

    Attributes:
        database: Async database session for this request.
        services: Shared resources.
        principal: Caller identity as supplied by the upstream gateway.
        request_id: Unique identifier for this request.
        client_ip: Client address after proxy headers are applied.
        user_agent: Raw User-Agent header.
        referer: Raw Referer header.
        tags: Free-form tags appended to every log line.
    """

    database: AsyncSession
    services: ServiceManager
    principal: Principal
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    tags: list[str] = field(default_factory=list)

    @property
    def settings(self) -> Settings:
        return self.services.settings

    @property
    def cache(self) -> CacheStore:
        return self.services.cache

    @property
    def queue(self) -> ClickQueue:
        return self.services.queue

    @property
    def logger(self) -> logging.LoggerAdapter:
        return logging.LoggerAdapter(
            self.services.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "principal_id": self.principal.id,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


def client_ip_from_request(request: Request) -> str | None:
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_service_manager(request: Request) -> ServiceManager:
    return request.app.state.services


async def get_db(manager: ServiceManager = Depends(get_service_manager)) -> AsyncGenerator[AsyncSession, None]:
    async with manager.session_factory() as session:
        yield session


async def get_principal(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Principal:
    return principal_from_headers(x_user_id, x_user_role)


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
    principal: Principal = Depends(get_principal),
) -> RequestContext:
    return RequestContext(
        database=db,
        services=manager,
        principal=principal,
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        client_ip=client_ip_from_request(request),
        user_agent=request.headers.get("user-agent"),
        referer=request.headers.get("referer"),
    )


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    return LinkService.from_context(ctx)


def get_analytics(ctx: RequestContext = Depends(get_request_context)) -> AnalyticsAggregator:
    return AnalyticsAggregator(ctx.database, ctx.cache, ctx.settings)
