"""UTC helpers shared by the store, policy and analytics code."""

import datetime

__all__ = ["utcnow", "ensure_utc"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """Attach UTC to naive values (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)
