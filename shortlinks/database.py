"""Database engine and session management for the short-link service.

This module builds the SQLAlchemy async engine and session factory from a
``Settings`` instance. Nothing is created at import time: the application
lifespan (and the ingestion worker) build one engine each and pass the
session factory to the components that need it.

Flow Diagram: Database Operations
=================================
::
    ┌──────────────┐
    │ build_engine │
    │ (settings)   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ build_session│
    │ _factory()   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ init_db()    │
    │ create_all   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ async with   │
    │ factory() as │
    │ session      │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ engine       │
    │ .dispose()   │
    └──────────────┘

How to Use
===========
**Step 1: Build on startup**::
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    await init_db(engine)

**Step 2: Open sessions**::
    async with session_factory() as session:
        await session.execute(select(Link))

**Step 3: Cleanup on shutdown**::
    await engine.dispose()

Key Behaviours
===============
- Pool sizing is applied only to server databases; SQLite gets defaults.
- Sessions do not expire attributes on commit, so returned rows stay usable.
- Tables are created at startup; there is no migration step.

Classes:
    Base:  SQLAlchemy declarative base for all models.

Functions:
    build_engine():  Creates the async engine for the configured URL.
    build_session_factory():  Wraps the engine in an ``async_sessionmaker``.
    init_db():  Creates all tables.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from shortlinks.config import Settings

__all__ = ["Base", "build_engine", "build_session_factory", "init_db"]


class Base(DeclarativeBase):
    pass


def build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"echo": settings.DATABASE_ECHO}
    if not settings.uses_sqlite:
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(settings.DATABASE_URL, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    # Importing registers the tables on Base.metadata.
    from shortlinks import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
