"""SQLAlchemy ORM models for the short-link service.

Data Model Layout
=================
::
    links table
    ├─ id (INTEGER PRIMARY KEY)
    ├─ short_code (VARCHAR(50) UNIQUE, INDEXED)
    ├─ destination_url (TEXT NOT NULL)
    ├─ is_custom_alias (BOOLEAN)
    ├─ title (VARCHAR(255) NULL)
    ├─ owner_id (VARCHAR(64) NULL, INDEXED)
    ├─ click_count (INTEGER DEFAULT 0)
    ├─ expires_at (TIMESTAMPTZ NULL)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    ├─ password_hash (VARCHAR(255) NULL)
    ├─ max_clicks (INTEGER DEFAULT 0)      0 = unlimited
    ├─ state (VARCHAR(16))                 active | tombstoned
    ├─ created_at / updated_at (TIMESTAMPTZ)
    └─ deleted_at (TIMESTAMPTZ NULL)

    clicks table
    ├─ id (INTEGER PRIMARY KEY)
    ├─ event_id (VARCHAR(64) UNIQUE)       idempotency key
    ├─ link_id (FK links.id ON DELETE CASCADE)
    ├─ ip_address / user_agent / referer
    ├─ browser / browser_version / os / os_version / device_type
    ├─ country (CHAR(2)) / city / latitude / longitude / timezone
    └─ created_at (TIMESTAMPTZ)            click time

Key Behaviours
===============
- The short-code unique constraint also covers tombstoned rows; a code is
  only reusable once the retention sweep has physically removed the row.
- ``click_count`` is only ever changed through a single UPDATE expression.
- Click rows are insert-only.

Classes:
    Link:  One short-code mapping and its access-control state.
    Click:  One enriched, persisted click.
"""

import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shortlinks.database import Base
from shortlinks.enums import LinkState
from shortlinks.timeutil import utcnow

__all__ = ["Link", "Click"]


class Link(Base):
    __tablename__ = "links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    destination_url: Mapped[str] = mapped_column(Text, nullable=False)
    is_custom_alias: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    click_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    max_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    state: Mapped[str] = mapped_column(String(16), default=LinkState.ACTIVE, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_tombstoned(self) -> bool:
        return self.state == LinkState.TOMBSTONED

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    def __repr__(self) -> str:
        return f"<Link(id={self.id}, short_code='{self.short_code}', clicks={self.click_count}, state={self.state})>"


class Click(Base):
    __tablename__ = "clicks"
    __table_args__ = (Index("ix_clicks_link_id_created_at", "link_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    link_id: Mapped[int] = mapped_column(ForeignKey("links.id", ondelete="CASCADE"), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referer: Mapped[str | None] = mapped_column(Text, nullable=True)
    browser: Mapped[str | None] = mapped_column(String(64), nullable=True)
    browser_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    os: Mapped[str | None] = mapped_column(String(64), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Click(id={self.id}, link_id={self.link_id}, event_id='{self.event_id}')>"
