"""Durable link records: creation, lookup, mutation and click counting.

``LinkStore`` owns every write to the ``links`` table and is the only place
that knows which writes must be followed by a lookup-cache invalidation.

Write Paths
===========
::
    create / bulk_create ──► INSERT ──► COMMIT
    update               ──► UPDATE ──► COMMIT ──► invalidate(link:lookup)
    soft_delete          ──► UPDATE ──► COMMIT ──► invalidate(link:lookup, analytics)
    increment_clicks     ──► UPDATE click_count = click_count + 1
                                    ──► COMMIT ──► invalidate(link:lookup)

How to Use
===========
**Create**::
    store = LinkStore(session, cache, settings)
    link = await store.create(LinkCreate(url="https://example.com"), owner_id="u1")

**Count a click**::
    await store.increment_clicks(link.id)

**Bulk create with per-item skipping**::
    result = await store.bulk_create(items)
    print(len(result.created), len(result.skipped))

Key Behaviours
===============
- Destinations must be absolute http(s) URLs whose host is not localhost or
  a private, loopback, link-local, unspecified or reserved IP literal.
- Custom aliases are checked against every stored code, tombstoned rows
  included; a lost insert race surfaces as ``ConflictError``.
- ``increment_clicks`` is one UPDATE statement, never read-modify-write.
- Bulk creation skips bad items individually and commits the rest in one
  transaction.
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit

import validators
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlinks.cache import CacheStore
from shortlinks.config import Settings
from shortlinks.enums import LinkState
from shortlinks.exceptions import ConflictError, LinkValidationError, NotFoundError
from shortlinks.models import Link
from shortlinks.schemas import LinkCreate, SkippedItem
from shortlinks.security import hash_password
from shortlinks.shortcode import ShortCodeGenerator
from shortlinks.timeutil import ensure_utc, utcnow

__all__ = [
    "LinkStore",
    "BulkCreateResult",
    "RESERVED_ALIASES",
    "MUTABLE_FIELDS",
    "validate_destination",
]

logger = logging.getLogger("shortlinks.store")

# Codes that would shadow service routes.
RESERVED_ALIASES = frozenset({"api", "health", "docs", "redoc", "metrics", "openapi.json"})

MUTABLE_FIELDS = frozenset({"title", "is_active", "expires_at", "max_clicks"})

ALLOWED_SCHEMES = ("http", "https")


def validate_destination(url: str) -> str:
    """Return the URL unchanged if it may be shortened.

    Raises:
        LinkValidationError: malformed URL, wrong scheme or disallowed host.
    """
    parts = urlsplit(url)
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise LinkValidationError("URL must use http or https")
    host = (parts.hostname or "").lower()
    if not host:
        raise LinkValidationError("URL must include a host")
    if host == "localhost" or host.endswith(".localhost"):
        raise LinkValidationError("URL host is not allowed")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None
    if address is not None:
        if (
            address.is_private
            or address.is_loopback
            or address.is_link_local
            or address.is_unspecified
            or address.is_reserved
            or address.is_multicast
        ):
            raise LinkValidationError("URL host is not allowed")
    elif not validators.url(url):
        raise LinkValidationError("Invalid URL provided")
    return url


@dataclass
class BulkCreateResult:
    created: list[Link] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)


class LinkStore:
    def __init__(
        self,
        session: AsyncSession,
        cache: CacheStore,
        settings: Settings,
        generator: ShortCodeGenerator | None = None,
    ) -> None:
        self._session = session
        self._cache = cache
        self._settings = settings
        self._generator = generator or ShortCodeGenerator.from_settings(settings)

    @property
    def session(self) -> AsyncSession:
        return self._session

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, payload: LinkCreate, owner_id: str | None = None) -> Link:
        """Validate and persist one link.

        Args:
            payload: Validated create request.
            owner_id: Owning principal id, or None for an ownerless link.

        Returns:
            Link: The committed row.

        Raises:
            LinkValidationError: Bad destination, reserved alias or past expiry.
            ConflictError: Custom alias already in use.
            ShortCodeExhaustedError: No free generated code was found.
        """
        destination = validate_destination(payload.url)
        expires_at = self._future_expiry(payload.expires_at)

        if payload.custom_alias:
            short_code = await self._claim_alias(payload.custom_alias)
        else:
            short_code = await self._generator.generate(self.is_code_taken)

        link = Link(
            short_code=short_code,
            destination_url=destination,
            is_custom_alias=bool(payload.custom_alias),
            title=payload.title,
            owner_id=owner_id,
            expires_at=expires_at,
            password_hash=await self._hash(payload.password),
            max_clicks=payload.max_clicks or 0,
            state=LinkState.ACTIVE,
        )
        self._session.add(link)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            logger.warning(f"Insert raced on short code {short_code}")
            raise ConflictError(f"Alias '{short_code}' is already in use", short_code=short_code) from exc

        logger.info(f"Link created: {short_code}", extra={"link_id": link.id, "owner_id": owner_id})
        return link

    async def bulk_create(self, items: list[LinkCreate], owner_id: str | None = None) -> BulkCreateResult:
        if len(items) > self._settings.BULK_CREATE_MAX_ITEMS:
            raise LinkValidationError(f"At most {self._settings.BULK_CREATE_MAX_ITEMS} links per bulk request")

        aliases = {item.custom_alias for item in items if item.custom_alias}
        taken: set[str] = set()
        if aliases:
            rows = await self._session.scalars(select(Link.short_code).where(Link.short_code.in_(aliases)))
            taken.update(rows)

        result = BulkCreateResult()
        now = utcnow()

        async def is_taken(code: str) -> bool:
            return code in taken or await self.is_code_taken(code)

        for index, item in enumerate(items):
            alias = item.custom_alias
            try:
                destination = validate_destination(item.url)
            except LinkValidationError as exc:
                result.skipped.append(SkippedItem(index=index, custom_alias=alias, reason=exc.message))
                continue
            if item.expires_at is not None and item.expires_at <= now:
                result.skipped.append(
                    SkippedItem(index=index, custom_alias=alias, reason="Expiration date must be in the future")
                )
                continue
            if alias and alias in RESERVED_ALIASES:
                result.skipped.append(SkippedItem(index=index, custom_alias=alias, reason="Alias is reserved"))
                continue
            if alias and alias in taken:
                result.skipped.append(
                    SkippedItem(index=index, custom_alias=alias, reason=f"Alias '{alias}' is already in use")
                )
                continue

            short_code = alias or await self._generator.generate(is_taken)
            taken.add(short_code)
            result.created.append(
                Link(
                    short_code=short_code,
                    destination_url=destination,
                    is_custom_alias=bool(alias),
                    title=item.title,
                    owner_id=owner_id,
                    expires_at=item.expires_at,
                    password_hash=await self._hash(item.password),
                    max_clicks=item.max_clicks or 0,
                    state=LinkState.ACTIVE,
                )
            )

        if result.created:
            self._session.add_all(result.created)
            try:
                await self._session.commit()
            except IntegrityError as exc:
                await self._session.rollback()
                raise ConflictError("A short code in this batch was claimed concurrently") from exc

        logger.info(
            f"Bulk create finished: created={len(result.created)} skipped={len(result.skipped)}",
            extra={"owner_id": owner_id},
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def is_code_taken(self, short_code: str) -> bool:
        if short_code.lower() in RESERVED_ALIASES:
            return True
        found = await self._session.scalar(select(Link.id).where(Link.short_code == short_code))
        return found is not None

    async def find_by_short_code(self, short_code: str, include_tombstoned: bool = False) -> Link | None:
        stmt = select(Link).where(Link.short_code == short_code).execution_options(populate_existing=True)
        if not include_tombstoned:
            stmt = stmt.where(Link.state == LinkState.ACTIVE)
        return await self._session.scalar(stmt)

    async def get_by_short_code(self, short_code: str, include_tombstoned: bool = False) -> Link:
        link = await self.find_by_short_code(short_code, include_tombstoned=include_tombstoned)
        if link is None:
            raise NotFoundError(f"Short link '{short_code}' not found", short_code=short_code)
        return link

    async def find_by_id(self, link_id: int) -> Link | None:
        return await self._session.scalar(
            select(Link)
            .where(Link.id == link_id, Link.state == LinkState.ACTIVE)
            .execution_options(populate_existing=True)
        )

    async def get_by_id(self, link_id: int) -> Link:
        link = await self.find_by_id(link_id)
        if link is None:
            raise NotFoundError(f"Link {link_id} not found")
        return link

    async def list_links(self, owner_id: str | None, page: int = 1, limit: int = 20) -> tuple[list[Link], int]:
        """Page through active links, newest first. ``owner_id=None`` lists every owner."""
        filters = [Link.state == LinkState.ACTIVE]
        if owner_id is not None:
            filters.append(Link.owner_id == owner_id)

        total = await self._session.scalar(select(func.count(Link.id)).where(*filters))
        rows = await self._session.scalars(
            select(Link)
            .where(*filters)
            .order_by(Link.created_at.desc(), Link.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(rows), int(total or 0)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update(self, link_id: int, changes: dict) -> Link:
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise LinkValidationError(f"Fields cannot be changed: {', '.join(sorted(unknown))}")

        link = await self.get_by_id(link_id)
        if "expires_at" in changes:
            changes["expires_at"] = self._future_expiry(changes["expires_at"])
        if changes.get("max_clicks") is None and "max_clicks" in changes:
            changes["max_clicks"] = 0
        if changes.get("is_active") is None and "is_active" in changes:
            raise LinkValidationError("is_active cannot be null")

        for name, value in changes.items():
            setattr(link, name, value)
        link.updated_at = utcnow()
        await self._session.commit()
        await self.invalidate(link.short_code)

        logger.info(f"Link updated: {link.short_code}", extra={"link_id": link.id, "fields": sorted(changes)})
        return link

    async def soft_delete(self, link_id: int) -> Link:
        link = await self.get_by_id(link_id)
        now = utcnow()
        link.state = LinkState.TOMBSTONED
        link.deleted_at = now
        link.updated_at = now
        await self._session.commit()
        await self.invalidate(link.short_code)
        await self._cache.invalidate_analytics(link.short_code)

        logger.info(f"Link tombstoned: {link.short_code}", extra={"link_id": link.id})
        return link

    async def increment_clicks(self, link_id: int, *, commit: bool = True) -> str:
        """Atomically add one click and return the link's short code.

        With ``commit=False`` the caller owns the transaction and the cache
        invalidation that must follow it.
        """
        result = await self._session.execute(
            update(Link)
            .where(Link.id == link_id)
            .values(click_count=Link.click_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Link {link_id} not found")

        short_code = await self._session.scalar(select(Link.short_code).where(Link.id == link_id))
        if commit:
            await self._session.commit()
            await self.invalidate(short_code)
        return short_code

    async def invalidate(self, short_code: str) -> None:
        await self._cache.invalidate_link(short_code)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _claim_alias(self, alias: str) -> str:
        if alias in RESERVED_ALIASES:
            raise LinkValidationError(f"Alias '{alias}' is reserved", short_code=alias)
        if await self.is_code_taken(alias):
            raise ConflictError(f"Alias '{alias}' is already in use", short_code=alias)
        return alias

    async def _hash(self, password: str | None) -> str | None:
        if not password:
            return None
        return await asyncio.to_thread(hash_password, password, self._settings.BCRYPT_ROUNDS)

    @staticmethod
    def _future_expiry(expires_at):
        expires_at = ensure_utc(expires_at)
        if expires_at is not None and expires_at <= utcnow():
            raise LinkValidationError("Expiration date must be in the future")
        return expires_at
