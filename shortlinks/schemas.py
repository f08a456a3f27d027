"""Pydantic request/response schemas for the short-link service.

Inputs accept both snake_case and the camelCase names used by existing
clients (``customAlias``, ``expiresAt``, ``maxClicks``, ``isActive``).
Outputs are snake_case.

Schema Groups
=============
::
    Link management     LinkCreate, BulkLinkCreate, LinkUpdate,
                        LinkResponse, LinkListResponse, BulkCreateResponse
    Lookup cache        LinkSnapshot
    Click pipeline      ClickEvent, ClickMessage
    Analytics           OverviewStats, TimelineStats, LocationStats,
                        DeviceStats, ReferrerStats, HeatmapStats
    Misc                HealthResponse, ErrorResponse

How to Use
===========
**Validate a request**::
    payload = LinkCreate(url="https://example.com", maxClicks=3)

**Serialize for the cache**::
    snapshot = LinkSnapshot.model_validate(link)
    raw = snapshot.model_dump_json()

Key Behaviours
===============
- Custom aliases are 3-50 chars of ``[A-Za-z0-9_-]`` and are lower-cased.
- ``max_clicks`` must be >= 1 on create; 0 (unlimited) is allowed on update.
- Destination URLs are length-checked here; scheme and host rules are
  enforced by the link store so bulk requests can skip items individually.
- All datetimes are timezone-aware UTC on the way out.
"""

import datetime
import uuid

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from shortlinks.enums import DenialReason, HealthStatus, LinkState, TimelineInterval
from shortlinks.timeutil import ensure_utc

__all__ = [
    "LinkCreate",
    "BulkLinkCreate",
    "LinkUpdate",
    "LinkResponse",
    "LinkListResponse",
    "SkippedItem",
    "BulkCreateResponse",
    "LinkSnapshot",
    "ClickEvent",
    "ClickMessage",
    "OverviewStats",
    "TimelinePoint",
    "TimelineStats",
    "CountryStat",
    "CityStat",
    "LocationStats",
    "DeviceTypeStat",
    "BrowserStat",
    "OsStat",
    "DeviceStats",
    "ReferrerStat",
    "ReferrerStats",
    "HeatmapCell",
    "HeatmapStats",
    "HealthResponse",
    "ErrorResponse",
]

ALIAS_PATTERN = r"^[a-zA-Z0-9_-]+$"


def _camel(snake: str, camel: str) -> AliasChoices:
    return AliasChoices(snake, camel)


class LinkCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048, validation_alias=_camel("url", "originalUrl"))
    custom_alias: str | None = Field(
        None,
        min_length=3,
        max_length=50,
        pattern=ALIAS_PATTERN,
        validation_alias=_camel("custom_alias", "customAlias"),
    )
    title: str | None = Field(None, max_length=255)
    expires_at: datetime.datetime | None = Field(None, validation_alias=_camel("expires_at", "expiresAt"))
    password: str | None = Field(None, min_length=6, max_length=128)
    max_clicks: int | None = Field(None, ge=1, validation_alias=_camel("max_clicks", "maxClicks"))

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        return v.strip()

    @field_validator("custom_alias")
    @classmethod
    def lower_alias(cls, v: str | None) -> str | None:
        return v.lower() if v is not None else None

    @field_validator("expires_at")
    @classmethod
    def expiry_to_utc(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return ensure_utc(v)


class BulkLinkCreate(BaseModel):
    links: list[LinkCreate] = Field(..., min_length=1, max_length=100)


class LinkUpdate(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    title: str | None = Field(None, max_length=255)
    is_active: bool | None = Field(None, validation_alias=_camel("is_active", "isActive"))
    expires_at: datetime.datetime | None = Field(None, validation_alias=_camel("expires_at", "expiresAt"))
    max_clicks: int | None = Field(None, ge=0, validation_alias=_camel("max_clicks", "maxClicks"))

    @field_validator("expires_at")
    @classmethod
    def expiry_to_utc(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return ensure_utc(v)

    def changes(self) -> dict:
        return self.model_dump(include=self.model_fields_set)


class LinkResponse(BaseModel):
    id: int
    short_code: str
    short_url: str
    destination_url: str
    title: str | None
    is_custom_alias: bool
    owner_id: str | None
    click_count: int
    expires_at: datetime.datetime | None
    is_active: bool
    has_password: bool
    max_clicks: int
    state: LinkState
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @classmethod
    def from_model(cls, link, base_url: str) -> "LinkResponse":
        return cls(
            id=link.id,
            short_code=link.short_code,
            short_url=f"{base_url.rstrip('/')}/{link.short_code}",
            destination_url=link.destination_url,
            title=link.title,
            is_custom_alias=link.is_custom_alias,
            owner_id=link.owner_id,
            click_count=link.click_count,
            expires_at=ensure_utc(link.expires_at),
            is_active=link.is_active,
            has_password=link.password_hash is not None,
            max_clicks=link.max_clicks,
            state=LinkState(link.state),
            created_at=ensure_utc(link.created_at),
            updated_at=ensure_utc(link.updated_at),
        )


class LinkListResponse(BaseModel):
    items: list[LinkResponse]
    total: int
    page: int
    limit: int


class SkippedItem(BaseModel):
    index: int
    custom_alias: str | None = None
    reason: str


class BulkCreateResponse(BaseModel):
    created: int
    skipped: int
    links: list[LinkResponse]
    skipped_items: list[SkippedItem]


class LinkSnapshot(BaseModel):
    """Cached lookup payload; carries everything the access policy reads."""

    id: int
    short_code: str
    destination_url: str
    owner_id: str | None = None
    click_count: int
    expires_at: datetime.datetime | None = None
    is_active: bool
    password_hash: str | None = None
    max_clicks: int
    state: LinkState
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def to_utc(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return ensure_utc(v)

    @property
    def is_tombstoned(self) -> bool:
        return self.state is LinkState.TOMBSTONED


class ClickEvent(BaseModel):
    """Raw click captured at redirect time, before enrichment."""

    link_id: int
    short_code: str = Field(..., description="Short code being clicked, e.g. 'abc123'")
    ip_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    clicked_at: datetime.datetime

    @field_validator("clicked_at")
    @classmethod
    def to_utc(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_utc(v)


class ClickMessage(BaseModel):
    """Queue envelope: idempotency key plus delivery attempt counter."""

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    attempt: int = Field(1, ge=1)
    event: ClickEvent

    def next_attempt(self) -> "ClickMessage":
        return self.model_copy(update={"attempt": self.attempt + 1})


class OverviewStats(BaseModel):
    short_code: str
    total_clicks: int
    unique_visitors: int
    top_country: str | None
    top_device: str | None
    top_browser: str | None
    average_clicks_per_day: float
    last_click_at: datetime.datetime | None
    created_at: datetime.datetime


class TimelinePoint(BaseModel):
    timestamp: datetime.datetime
    clicks: int


class TimelineStats(BaseModel):
    short_code: str
    interval: TimelineInterval
    days: int
    total_clicks: int
    data: list[TimelinePoint]


class CountryStat(BaseModel):
    country_code: str
    country: str
    clicks: int
    percentage: float


class CityStat(BaseModel):
    city: str
    country: str | None
    clicks: int


class LocationStats(BaseModel):
    short_code: str
    total_clicks: int
    countries: list[CountryStat]
    cities: list[CityStat]


class DeviceTypeStat(BaseModel):
    device_type: str
    clicks: int
    percentage: float


class BrowserStat(BaseModel):
    browser: str
    version: str | None
    clicks: int
    percentage: float


class OsStat(BaseModel):
    os: str
    version: str | None
    clicks: int
    percentage: float


class DeviceStats(BaseModel):
    short_code: str
    total_clicks: int
    by_type: list[DeviceTypeStat]
    by_browser: list[BrowserStat]
    by_os: list[OsStat]


class ReferrerStat(BaseModel):
    referer: str
    clicks: int


class ReferrerStats(BaseModel):
    short_code: str
    referrers: list[ReferrerStat]


class HeatmapCell(BaseModel):
    day: str
    hour: int
    country: str
    clicks: int


class HeatmapStats(BaseModel):
    short_code: str
    days: int
    cells: list[HeatmapCell]


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus


class ErrorResponse(BaseModel):
    status_code: int
    error: str
    message: str
    short_code: str | None = None
    reason: DenialReason | None = None
