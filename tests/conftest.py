"""Shared pytest fixtures: SQLite-backed store, in-memory Redis, wired app."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fakes import FakeRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from shortlinks.cache import CacheStore
from shortlinks.config import Settings
from shortlinks.database import build_engine, build_session_factory, init_db
from shortlinks.dependencies import ServiceManager
from shortlinks.geoip import GeoIpResolver
from shortlinks.ingestion import ClickConsumer, ClickIngestionService
from shortlinks.link_store import LinkStore
from shortlinks.main import app
from shortlinks.user_agent import UserAgentParser
from shortlinks.worker import ClickWorker


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        APP_ENV="test",
        BASE_URL="http://sho.rt",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'shortlinks.db'}",
        KAFKA_ENABLED=False,
        BCRYPT_ROUNDS=4,
        CLICK_RETRY_BACKOFF_SECONDS=0,
        CACHE_LOCK_RETRY_DELAY_SECONDS=0.001,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis) -> CacheStore:
    return CacheStore(fake_redis)


@pytest.fixture
def store(db_session: AsyncSession, cache: CacheStore, settings: Settings) -> LinkStore:
    return LinkStore(db_session, cache, settings)


@pytest.fixture
def ingestion(session_factory, cache: CacheStore, settings: Settings) -> ClickIngestionService:
    return ClickIngestionService(session_factory, cache, settings, UserAgentParser(), GeoIpResolver(settings))


@pytest.fixture
def consumer(ingestion: ClickIngestionService, fake_redis: FakeRedis, settings: Settings) -> ClickConsumer:
    return ClickConsumer(ingestion.ingest, fake_redis, settings)


@pytest_asyncio.fixture
async def worker(consumer: ClickConsumer, fake_redis: FakeRedis, settings: Settings) -> ClickWorker:
    worker = ClickWorker(consumer, fake_redis, settings)
    await worker.ensure_stream_group()
    return worker


@pytest.fixture
def services(settings, engine, session_factory, fake_redis) -> ServiceManager:
    return ServiceManager(settings, engine, session_factory, fake_redis)


@pytest_asyncio.fixture
async def client(services: ServiceManager, worker: ClickWorker) -> AsyncGenerator[AsyncClient, None]:
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.services = None
