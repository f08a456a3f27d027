"""Retention sweep: the only code path that physically deletes rows.

- Tombstoned links whose ``deleted_at`` is older than ``LINK_RETENTION_DAYS``
  are removed together with their clicks; their codes become reusable.
- Clicks older than ``CLICK_RETENTION_DAYS`` are removed for every link.

Scheduling is left to the platform (cron, a Kubernetes CronJob, ...)::

    python -m shortlinks.maintenance
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass

import redis.asyncio as redis
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shortlinks.cache import CacheStore
from shortlinks.config import Settings, get_settings
from shortlinks.database import build_engine, build_session_factory
from shortlinks.enums import LinkState
from shortlinks.logger import setup_logger
from shortlinks.models import Click, Link
from shortlinks.timeutil import utcnow

__all__ = ["SweepResult", "run_retention_sweep"]

logger = logging.getLogger("shortlinks.maintenance")


@dataclass(frozen=True)
class SweepResult:
    links_deleted: int
    clicks_deleted: int


async def run_retention_sweep(
    session: AsyncSession,
    cache: CacheStore,
    settings: Settings,
    now: datetime.datetime | None = None,
) -> SweepResult:
    now = now or utcnow()
    link_cutoff = now - datetime.timedelta(days=settings.LINK_RETENTION_DAYS)
    click_cutoff = now - datetime.timedelta(days=settings.CLICK_RETENTION_DAYS)

    expired = (
        await session.execute(
            select(Link.id, Link.short_code).where(
                Link.state == LinkState.TOMBSTONED,
                Link.deleted_at < link_cutoff,
            )
        )
    ).all()
    link_ids = [row.id for row in expired]

    clicks_deleted = 0
    links_deleted = 0
    if link_ids:
        result = await session.execute(
            delete(Click).where(Click.link_id.in_(link_ids)).execution_options(synchronize_session=False)
        )
        clicks_deleted += result.rowcount
        result = await session.execute(
            delete(Link).where(Link.id.in_(link_ids)).execution_options(synchronize_session=False)
        )
        links_deleted = result.rowcount

    result = await session.execute(
        delete(Click).where(Click.created_at < click_cutoff).execution_options(synchronize_session=False)
    )
    clicks_deleted += result.rowcount
    await session.commit()

    for row in expired:
        await cache.invalidate_link(row.short_code)
        await cache.invalidate_analytics(row.short_code)

    logger.info(f"Retention sweep removed {links_deleted} links and {clicks_deleted} clicks")
    return SweepResult(links_deleted=links_deleted, clicks_deleted=clicks_deleted)


async def main() -> None:
    settings = get_settings()
    setup_logger(settings.LOG_LEVEL)
    engine = build_engine(settings)
    client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        async with build_session_factory(engine)() as session:
            await run_retention_sweep(session, CacheStore(client), settings)
    finally:
        await client.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
