"""Shared enums for the short-link service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "RequestStatus",
    "CacheStatus",
    "LinkState",
    "DenialReason",
    "DeviceType",
    "TimelineInterval",
    "Role",
    "ClickOutcome",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def from_str(cls, value: str) -> "HealthStatus":
        """Safely parse from string, falling back to UNHEALTHY for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNHEALTHY


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    DENIED = "denied"
    ERROR = "error"
    NOT_FOUND = "not_found"

    @classmethod
    def from_str(cls, value: str) -> "RequestStatus":
        """Safely parse from string, falling back to ERROR for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"

    @classmethod
    def from_str(cls, value: str) -> "CacheStatus":
        """Safely parse from string, falling back to MISS for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.MISS


class LinkState(StrEnum):
    """Lifecycle tag stored on every link row."""

    ACTIVE = "active"
    TOMBSTONED = "tombstoned"


class DenialReason(StrEnum):
    """Why the access policy refused a redirect.

    Members are declared in evaluation order.
    """

    GONE = "Gone"
    DEACTIVATED = "Deactivated"
    EXPIRED = "Expired"
    QUOTA_EXCEEDED = "QuotaExceeded"
    PASSWORD_REQUIRED = "PasswordRequired"
    PASSWORD_MISMATCH = "PasswordMismatch"

    @property
    def status_code(self) -> int:
        return 404 if self is DenialReason.GONE else 400

    @property
    def message(self) -> str:
        return _DENIAL_MESSAGES[self]


_DENIAL_MESSAGES = {
    DenialReason.GONE: "This link has been deleted",
    DenialReason.DEACTIVATED: "This link has been deactivated",
    DenialReason.EXPIRED: "This link has expired",
    DenialReason.QUOTA_EXCEEDED: "This link has reached its maximum number of clicks",
    DenialReason.PASSWORD_REQUIRED: "This link is password protected",
    DenialReason.PASSWORD_MISMATCH: "Incorrect password",
}


class DeviceType(StrEnum):
    """Device classes recorded on enriched clicks."""

    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    TV = "tv"
    WEARABLE = "wearable"
    CONSOLE = "console"
    BOT = "bot"


class TimelineInterval(StrEnum):
    """Bucket granularity for click timelines."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"

    @classmethod
    def from_str(cls, value: str) -> "TimelineInterval":
        """Safely parse from string, falling back to DAY for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.DAY


class Role(StrEnum):
    """Principal roles understood by ownership checks."""

    USER = "user"
    ADMIN = "admin"

    @classmethod
    def from_str(cls, value: str) -> "Role":
        """Safely parse from string, falling back to USER for unknown values."""
        try:
            return cls(value.lower())
        except ValueError:
            return cls.USER


class ClickOutcome(StrEnum):
    """Terminal states of one click message in the ingestion pipeline."""

    PERSISTED = "persisted"
    DUPLICATE = "duplicate"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"
