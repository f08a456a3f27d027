"""Read-side click analytics, cached per short code.

Every query loads the link (tombstoned links are NotFound), checks that the
principal may see it, then goes through ``CacheStore.get_or_load`` with its
own key and TTL. Fresh results are always computed from persisted click
rows.

Query Overview
==============
::
    overview   totals, distinct IPs, top country/device/browser, clicks/day
    timeline   click counts per hour/day/week bucket over the last N days
    locations  top-10 countries (share of the top-10 total), top-10 cities
    devices    device types, top-10 browser+version, top-10 OS+version
    referrers  top-20 referers, missing referer reported as "Direct"
    heatmap    clicks per day x hour x country over the last N (<= 30) days
    export     every click as CSV, newest first (never cached)

Key Behaviours
===============
- Percentages are rounded to two decimals; a zero total yields 0.0.
- A link without clicks returns zeroed totals and empty lists.
- Time buckets use ``date_trunc`` on PostgreSQL and ``strftime``/``date``
  on SQLite; both are normalised to UTC datetimes.
- Ties in rankings are ordered by value so repeated calls agree.
"""

import csv
import datetime
import io
import logging

from sqlalchemy import Integer, cast, desc, distinct, func, literal_column, select
from sqlalchemy.ext.asyncio import AsyncSession

from shortlinks.cache import CacheStore, analytics_key
from shortlinks.config import Settings
from shortlinks.enums import LinkState, TimelineInterval
from shortlinks.exceptions import NotFoundError
from shortlinks.models import Click, Link
from shortlinks.schemas import (
    BrowserStat,
    CityStat,
    CountryStat,
    DeviceStats,
    DeviceTypeStat,
    HeatmapCell,
    HeatmapStats,
    LocationStats,
    OsStat,
    OverviewStats,
    ReferrerStat,
    ReferrerStats,
    TimelinePoint,
    TimelineStats,
)
from shortlinks.security import Principal, ensure_can_manage
from shortlinks.timeutil import ensure_utc, utcnow

__all__ = ["AnalyticsAggregator", "COUNTRY_NAMES", "EXPORT_COLUMNS", "percentage"]

logger = logging.getLogger("shortlinks.analytics")

COUNTRY_NAMES = {
    "ID": "Indonesia",
    "US": "United States",
    "SG": "Singapore",
    "MY": "Malaysia",
    "TH": "Thailand",
    "VN": "Vietnam",
    "PH": "Philippines",
    "IN": "India",
    "CN": "China",
    "JP": "Japan",
    "KR": "South Korea",
    "GB": "United Kingdom",
    "DE": "Germany",
    "FR": "France",
    "AU": "Australia",
}

EXPORT_COLUMNS = ("timestamp", "ip_address", "country", "city", "device", "browser", "os", "referer")

TIMELINE_MAX_DAYS = 365
HEATMAP_MAX_DAYS = 30
TOP_LOCATIONS = 10
TOP_VERSIONS = 10
TOP_REFERRERS = 20


def percentage(part: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(part / total * 100, 2)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _as_datetime(value) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
    return ensure_utc(datetime.datetime.fromisoformat(str(value)))


class AnalyticsAggregator:
    def __init__(self, session: AsyncSession, cache: CacheStore, settings: Settings) -> None:
        self._session = session
        self._cache = cache
        self._settings = settings

    # ------------------------------------------------------------------
    # Cached queries
    # ------------------------------------------------------------------

    async def overview(self, short_code: str, principal: Principal) -> OverviewStats:
        link = await self._load_link(short_code, principal)
        return await self._cache.get_or_load(
            analytics_key("overview", short_code),
            OverviewStats,
            lambda: self._compute_overview(link),
            self._settings.ANALYTICS_OVERVIEW_TTL_SECONDS,
            namespace="overview",
        )

    async def timeline(
        self,
        short_code: str,
        principal: Principal,
        interval: TimelineInterval = TimelineInterval.DAY,
        days: int = 30,
    ) -> TimelineStats:
        link = await self._load_link(short_code, principal)
        days = clamp(days, 1, TIMELINE_MAX_DAYS)
        return await self._cache.get_or_load(
            analytics_key("timeline", short_code, interval.value, days),
            TimelineStats,
            lambda: self._compute_timeline(link, interval, days),
            self._settings.ANALYTICS_TIMELINE_TTL_SECONDS,
            namespace="timeline",
            short_code=short_code,
        )

    async def locations(self, short_code: str, principal: Principal) -> LocationStats:
        link = await self._load_link(short_code, principal)
        return await self._cache.get_or_load(
            analytics_key("locations", short_code),
            LocationStats,
            lambda: self._compute_locations(link),
            self._settings.ANALYTICS_BREAKDOWN_TTL_SECONDS,
            namespace="locations",
        )

    async def devices(self, short_code: str, principal: Principal) -> DeviceStats:
        link = await self._load_link(short_code, principal)
        return await self._cache.get_or_load(
            analytics_key("devices", short_code),
            DeviceStats,
            lambda: self._compute_devices(link),
            self._settings.ANALYTICS_BREAKDOWN_TTL_SECONDS,
            namespace="devices",
        )

    async def referrers(self, short_code: str, principal: Principal) -> ReferrerStats:
        link = await self._load_link(short_code, principal)
        return await self._cache.get_or_load(
            analytics_key("referrers", short_code),
            ReferrerStats,
            lambda: self._compute_referrers(link),
            self._settings.ANALYTICS_BREAKDOWN_TTL_SECONDS,
            namespace="referrers",
        )

    async def heatmap(self, short_code: str, principal: Principal, days: int = 7) -> HeatmapStats:
        link = await self._load_link(short_code, principal)
        days = clamp(days, 1, HEATMAP_MAX_DAYS)
        return await self._cache.get_or_load(
            analytics_key("heatmap", short_code, days),
            HeatmapStats,
            lambda: self._compute_heatmap(link, days),
            self._settings.ANALYTICS_TIMELINE_TTL_SECONDS,
            namespace="heatmap",
            short_code=short_code,
        )

    async def export_csv(self, short_code: str, principal: Principal) -> str:
        link = await self._load_link(short_code, principal)
        rows = await self._session.scalars(
            select(Click).where(Click.link_id == link.id).order_by(Click.created_at.desc(), Click.id.desc())
        )

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)
        for click in rows:
            writer.writerow(
                [
                    ensure_utc(click.created_at).isoformat(),
                    click.ip_address or "",
                    click.country or "",
                    click.city or "",
                    click.device_type or "",
                    click.browser or "",
                    click.os or "",
                    click.referer or "",
                ]
            )
        logger.info(f"Exported clicks for {short_code}", extra={"link_id": link.id})
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Fresh computations
    # ------------------------------------------------------------------

    async def _compute_overview(self, link: Link) -> OverviewStats:
        total = await self._session.scalar(select(func.count(Click.id)).where(Click.link_id == link.id)) or 0
        unique = (
            await self._session.scalar(
                select(func.count(distinct(Click.ip_address))).where(Click.link_id == link.id)
            )
            or 0
        )
        last_click = await self._session.scalar(select(func.max(Click.created_at)).where(Click.link_id == link.id))

        created_at = ensure_utc(link.created_at)
        days_since_creation = max(1, (utcnow() - created_at).days)
        return OverviewStats(
            short_code=link.short_code,
            total_clicks=total,
            unique_visitors=unique,
            top_country=await self._top_value(Click.country, link.id),
            top_device=await self._top_value(Click.device_type, link.id),
            top_browser=await self._top_value(Click.browser, link.id),
            average_clicks_per_day=round(total / days_since_creation, 2),
            last_click_at=_as_datetime(last_click) if last_click is not None else None,
            created_at=created_at,
        )

    async def _compute_timeline(self, link: Link, interval: TimelineInterval, days: int) -> TimelineStats:
        since = utcnow() - datetime.timedelta(days=days)
        bucket = self._bucket(interval).label("bucket")
        result = await self._session.execute(
            select(bucket, func.count(Click.id).label("clicks"))
            .where(Click.link_id == link.id, Click.created_at >= since)
            .group_by("bucket")
            .order_by("bucket")
        )
        points = [TimelinePoint(timestamp=_as_datetime(row.bucket), clicks=row.clicks) for row in result]
        return TimelineStats(
            short_code=link.short_code,
            interval=interval,
            days=days,
            total_clicks=sum(p.clicks for p in points),
            data=points,
        )

    async def _compute_locations(self, link: Link) -> LocationStats:
        country_rows = (
            await self._session.execute(
                self._ranked(Click.country, link.id).limit(TOP_LOCATIONS)
            )
        ).all()
        total = sum(row.clicks for row in country_rows)
        countries = [
            CountryStat(
                country_code=row.value,
                country=COUNTRY_NAMES.get(row.value, row.value),
                clicks=row.clicks,
                percentage=percentage(row.clicks, total),
            )
            for row in country_rows
        ]

        city_rows = await self._session.execute(
            select(Click.city, Click.country, func.count(Click.id).label("clicks"))
            .where(Click.link_id == link.id, Click.city.is_not(None))
            .group_by(Click.city, Click.country)
            .order_by(desc("clicks"), Click.city)
            .limit(TOP_LOCATIONS)
        )
        cities = [CityStat(city=row.city, country=row.country, clicks=row.clicks) for row in city_rows]
        return LocationStats(short_code=link.short_code, total_clicks=total, countries=countries, cities=cities)

    async def _compute_devices(self, link: Link) -> DeviceStats:
        type_rows = (await self._session.execute(self._ranked(Click.device_type, link.id))).all()
        total = sum(row.clicks for row in type_rows)
        by_type = [
            DeviceTypeStat(device_type=row.value, clicks=row.clicks, percentage=percentage(row.clicks, total))
            for row in type_rows
        ]

        browser_rows = await self._session.execute(
            self._ranked_with_version(Click.browser, Click.browser_version, link.id)
        )
        by_browser = [
            BrowserStat(
                browser=row.value, version=row.version, clicks=row.clicks, percentage=percentage(row.clicks, total)
            )
            for row in browser_rows
        ]

        os_rows = await self._session.execute(self._ranked_with_version(Click.os, Click.os_version, link.id))
        by_os = [
            OsStat(os=row.value, version=row.version, clicks=row.clicks, percentage=percentage(row.clicks, total))
            for row in os_rows
        ]
        return DeviceStats(
            short_code=link.short_code, total_clicks=total, by_type=by_type, by_browser=by_browser, by_os=by_os
        )

    async def _compute_referrers(self, link: Link) -> ReferrerStats:
        source = func.coalesce(Click.referer, literal_column("'Direct'")).label("source")
        result = await self._session.execute(
            select(source, func.count(Click.id).label("clicks"))
            .where(Click.link_id == link.id)
            .group_by("source")
            .order_by(desc("clicks"), "source")
            .limit(TOP_REFERRERS)
        )
        return ReferrerStats(
            short_code=link.short_code,
            referrers=[ReferrerStat(referer=row.source, clicks=row.clicks) for row in result],
        )

    async def _compute_heatmap(self, link: Link, days: int) -> HeatmapStats:
        since = utcnow() - datetime.timedelta(days=days)
        day, hour = self._day_and_hour()
        result = await self._session.execute(
            select(day.label("day"), hour.label("hour"), Click.country, func.count(Click.id).label("clicks"))
            .where(Click.link_id == link.id, Click.created_at >= since, Click.country.is_not(None))
            .group_by("day", "hour", Click.country)
            .order_by("day", "hour", Click.country)
        )
        cells = [
            HeatmapCell(day=str(row.day), hour=int(row.hour), country=row.country, clicks=row.clicks)
            for row in result
        ]
        return HeatmapStats(short_code=link.short_code, days=days, cells=cells)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_link(self, short_code: str, principal: Principal) -> Link:
        link = await self._session.scalar(
            select(Link).where(Link.short_code == short_code, Link.state == LinkState.ACTIVE)
        )
        if link is None:
            raise NotFoundError(f"Short link '{short_code}' not found", short_code=short_code)
        ensure_can_manage(principal, link.owner_id, short_code)
        return link

    def _ranked(self, column, link_id: int):
        return (
            select(column.label("value"), func.count(Click.id).label("clicks"))
            .where(Click.link_id == link_id, column.is_not(None))
            .group_by(column)
            .order_by(desc("clicks"), column)
        )

    def _ranked_with_version(self, column, version_column, link_id: int):
        return (
            select(column.label("value"), version_column.label("version"), func.count(Click.id).label("clicks"))
            .where(Click.link_id == link_id, column.is_not(None))
            .group_by(column, version_column)
            .order_by(desc("clicks"), column, version_column)
            .limit(TOP_VERSIONS)
        )

    async def _top_value(self, column, link_id: int) -> str | None:
        row = (await self._session.execute(self._ranked(column, link_id).limit(1))).first()
        return row.value if row is not None else None

    def _dialect(self) -> str:
        return self._session.get_bind().dialect.name

    def _bucket(self, interval: TimelineInterval):
        if self._dialect() == "sqlite":
            if interval is TimelineInterval.HOUR:
                return func.strftime(literal_column("'%Y-%m-%d %H:00:00'"), Click.created_at)
            if interval is TimelineInterval.WEEK:
                return func.date(Click.created_at, literal_column("'weekday 0'"), literal_column("'-6 days'"))
            return func.date(Click.created_at)
        return func.date_trunc(literal_column(f"'{interval.value}'"), Click.created_at)

    def _day_and_hour(self):
        if self._dialect() == "sqlite":
            return (
                func.strftime(literal_column("'%Y-%m-%d'"), Click.created_at),
                cast(func.strftime(literal_column("'%H'"), Click.created_at), Integer),
            )
        return (
            func.to_char(Click.created_at, literal_column("'YYYY-MM-DD'")),
            cast(func.date_part(literal_column("'hour'"), Click.created_at), Integer),
        )
