"""Configuration management for the short-link service.

All tunables (stores, cache TTLs, queue transport, enrichment sources and
retention windows) live on one Pydantic ``BaseSettings`` model. Environment
variables and an optional ``.env`` file override the defaults.

Flow Diagram: get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache │
    │ (lru_cache) │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1: Import**::
    from shortlinks.config import get_settings

**Step 2: Read values**::
    settings = get_settings()
    ttl = settings.LINK_CACHE_TTL_SECONDS

**Step 3: Build an isolated instance (tests, scripts)**::
    settings = Settings(_env_file=None, APP_ENV="test")

Key Behaviours
===============
- ``get_settings()`` is cached; components receive the instance explicitly.
- ``is_production`` switches the private-IP geolocation behaviour.
- ``uses_sqlite`` lets the database layer skip pool arguments SQLite rejects.

Classes:
    Settings:  Pydantic model for all configuration values.
"""

__all__ = ["Settings", "get_settings", "DEFAULT_SHORT_CODE_ALPHABET"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

# No 0/O, 1/l/I.
DEFAULT_SHORT_CODE_ALPHABET = "abcdefghijkmnopqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class Settings(BaseSettings):
    APP_NAME: str = "shortlinks"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"
    LOG_LEVEL: str = "INFO"

    # Durable store
    DATABASE_URL: str = "postgresql+asyncpg://shortlinks:shortlinks@db:5432/shortlinks"
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis (cache, fallback stream, retry schedule, dead letters)
    REDIS_URL: str = "redis://redis:6379/0"

    # Short codes
    SHORT_CODE_LENGTH: int = 6
    SHORT_CODE_ALPHABET: str = DEFAULT_SHORT_CODE_ALPHABET
    SHORT_CODE_MAX_ATTEMPTS: int = 5
    BULK_CREATE_MAX_ITEMS: int = 100

    # Cache TTLs
    LINK_CACHE_TTL_SECONDS: int = 3600
    ANALYTICS_OVERVIEW_TTL_SECONDS: int = 600
    ANALYTICS_TIMELINE_TTL_SECONDS: int = 300
    ANALYTICS_BREAKDOWN_TTL_SECONDS: int = 600

    # Cache stampede protection
    CACHE_LOCK_TTL_SECONDS: int = 3
    CACHE_LOCK_RETRY_COUNT: int = 3
    CACHE_LOCK_RETRY_DELAY_SECONDS: float = 0.05

    # Passwords
    BCRYPT_ROUNDS: int = 10

    # Kafka queue
    KAFKA_ENABLED: bool = True
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_CLICK_TOPIC: str = "click_events"
    QUEUE_PUBLISH_TIMEOUT_SECONDS: float = 2.0

    # Redis-side queue structures
    CLICK_STREAM_KEY: str = "click_events"
    CLICK_RETRY_KEY: str = "click_events:retry"
    CLICK_DEAD_LETTER_STREAM: str = "click_events:dead"

    # Ingestion worker
    INGESTION_CONSUMER_GROUP: str = "click_ingestion_group"
    INGESTION_CONSUMER_NAME: str = "ingestion-consumer-1"
    INGESTION_BATCH_SIZE: int = 100
    INGESTION_BLOCK_MS: int = 1000
    INGESTION_CONCURRENCY: int = 10
    INGESTION_METRICS_PORT: int = 9200
    CLICK_MAX_ATTEMPTS: int = 3
    CLICK_RETRY_BACKOFF_SECONDS: float = 2.0

    # Geolocation
    GEOIP_DATABASE_PATH: str | None = None
    GEOIP_USE_API: bool = False
    GEOIP_API_URL: str = "http://ip-api.com/json/{ip}"
    GEOIP_TIMEOUT_SECONDS: float = 3.0

    # Retention sweep
    LINK_RETENTION_DAYS: int = 30
    CLICK_RETENTION_DAYS: int = 180

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"

    @property
    def uses_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
