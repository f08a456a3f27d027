"""Access policy for redirects.

``evaluate`` is pure: it reads the link snapshot, the supplied password and
the clock value it is given, and returns the first matching denial. Checks
run in a fixed order so a link failing several rules always reports the
same reason:

    Gone → Deactivated → Expired → QuotaExceeded → PasswordRequired → PasswordMismatch
"""

import datetime

from shortlinks.enums import DenialReason
from shortlinks.exceptions import AccessDeniedError
from shortlinks.schemas import LinkSnapshot
from shortlinks.security import verify_password
from shortlinks.timeutil import ensure_utc, utcnow

__all__ = ["evaluate", "authorize"]


def evaluate(
    link: LinkSnapshot,
    password: str | None = None,
    now: datetime.datetime | None = None,
) -> DenialReason | None:
    now = ensure_utc(now) if now is not None else utcnow()

    if link.is_tombstoned:
        return DenialReason.GONE
    if not link.is_active:
        return DenialReason.DEACTIVATED
    if link.expires_at is not None and link.expires_at <= now:
        return DenialReason.EXPIRED
    if link.max_clicks > 0 and link.click_count >= link.max_clicks:
        return DenialReason.QUOTA_EXCEEDED
    if link.password_hash is not None:
        if not password:
            return DenialReason.PASSWORD_REQUIRED
        if not verify_password(password, link.password_hash):
            return DenialReason.PASSWORD_MISMATCH
    return None


def authorize(
    link: LinkSnapshot,
    password: str | None = None,
    now: datetime.datetime | None = None,
) -> str:
    """Return the destination URL or raise ``AccessDeniedError``."""
    reason = evaluate(link, password, now)
    if reason is not None:
        raise AccessDeniedError(reason, short_code=link.short_code)
    return link.destination_url
