"""Short-link service layer: management operations and the redirect path.

``LinkService`` is built per request from a ``RequestContext`` and composes
the lower-level components::

    ┌──────────────────────────────────────────────────────────────┐
    │                         LinkService                          │
    │  create / bulk / list / get / update / delete   (management) │
    │  resolve_redirect → track_click                 (redirect)   │
    └───────┬─────────────────┬──────────────────┬─────────────────┘
            ▼                 ▼                  ▼
    ┌──────────────┐  ┌──────────────┐   ┌──────────────┐
    │  LinkStore   │  │ LookupCache  │   │  ClickQueue  │
    │  (SQL)       │  │ (Redis→SQL)  │   │ (Kafka/Redis)│
    └──────────────┘  └──────┬───────┘   └──────────────┘
                             ▼
                      ┌──────────────┐
                      │ policy       │
                      │ .authorize   │
                      └──────────────┘

Redirect Flow
=============
::
    GET /{code}
        │
        ▼
    LookupCache.resolve ── unknown ──► NotFoundError (404)
        │
        ▼
    policy.authorize ── denied ──► AccessDeniedError (404 Gone / 400 other)
        │
        ▼
    302 Location ──► background: ClickQueue.enqueue(ClickEvent)

Usage Example
=============
```python
@router.post("/api/links")
async def create_link(payload: LinkCreate, service: LinkService = Depends(get_link_service)):
    link = await service.create_link(payload)
    return LinkResponse.from_model(link, service.settings.BASE_URL)
```
"""

import asyncio
import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

from shortlinks.enums import RequestStatus
from shortlinks.exceptions import (
    AccessDeniedError,
    ConflictError,
    ForbiddenError,
    LinkValidationError,
    NotFoundError,
    ShortCodeExhaustedError,
)
from shortlinks.link_store import BulkCreateResult, LinkStore
from shortlinks.lookup import LookupCache
from shortlinks.models import Link
from shortlinks.policy import authorize
from shortlinks.schemas import ClickEvent, LinkCreate, LinkSnapshot, LinkUpdate
from shortlinks.security import ensure_can_manage
from shortlinks.timeutil import utcnow

if TYPE_CHECKING:
    from shortlinks.dependencies import RequestContext

__all__ = ["LinkService"]

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "shortlinks_creation_requests_total",
    "Link creation requests by outcome",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "shortlinks_creation_duration_seconds",
    "Time taken to create short links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
REDIRECT_REQUESTS_TOTAL = Counter(
    "shortlinks_redirect_requests_total",
    "Redirect requests by outcome",
    ["status", "reason"],
)


class LinkService:
    """Request-scoped facade over store, lookup cache, policy and queue.

    Example:
        >>> service = LinkService.from_context(ctx)
        >>> link = await service.create_link(LinkCreate(url="https://example.com"))
        >>> snapshot = await service.resolve_redirect(link.short_code)
    """

    def __init__(self, ctx: "RequestContext") -> None:
        self._ctx = ctx
        self._logger = ctx.logger
        self._settings = ctx.settings
        self._principal = ctx.principal
        self._queue = ctx.queue
        self._store = LinkStore(ctx.database, ctx.cache, ctx.settings)
        self._lookup = LookupCache(ctx.cache, self._store, ctx.settings)

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "LinkService":
        return cls(ctx)

    @property
    def settings(self):
        return self._settings

    @property
    def store(self) -> LinkStore:
        return self._store

    # ========================================================================
    # MANAGEMENT
    # ========================================================================

    async def create_link(self, payload: LinkCreate) -> Link:
        """Create one link owned by the calling principal.

        Args:
            payload: Validated create request.

        Returns:
            Link: The persisted link.

        Raises:
            LinkValidationError: Destination, alias or expiry rejected.
            ConflictError: Custom alias already in use.
            ShortCodeExhaustedError: Code space exhausted; logged at CRITICAL.
        """
        start_time = time.perf_counter()
        try:
            link = await self._store.create(payload, owner_id=self._principal.id)
        except (LinkValidationError, ConflictError) as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=self._status_of(exc)).inc()
            self._logger.warning(f"Link creation rejected: {exc.message}")
            raise
        except ShortCodeExhaustedError as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.critical(f"Short code space exhausted: {exc.message}")
            raise
        finally:
            LINK_CREATION_DURATION.observe(time.perf_counter() - start_time)

        LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Link {link.short_code} created in {time.perf_counter() - start_time:.3f}s")
        return link

    async def bulk_create(self, items: list[LinkCreate]) -> BulkCreateResult:
        try:
            result = await self._store.bulk_create(items, owner_id=self._principal.id)
        except ShortCodeExhaustedError as exc:
            self._logger.critical(f"Short code space exhausted during bulk create: {exc.message}")
            raise
        LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc(len(result.created))
        return result

    async def get_link(self, link_id: int) -> Link:
        link = await self._store.get_by_id(link_id)
        ensure_can_manage(self._principal, link.owner_id, link.short_code)
        return link

    async def list_links(self, page: int = 1, limit: int = 20) -> tuple[list[Link], int]:
        if self._principal.is_admin:
            return await self._store.list_links(None, page, limit)
        if self._principal.is_anonymous:
            raise ForbiddenError("Listing links requires a user id")
        return await self._store.list_links(self._principal.id, page, limit)

    async def update_link(self, link_id: int, payload: LinkUpdate) -> Link:
        await self.get_link(link_id)
        return await self._store.update(link_id, payload.changes())

    async def delete_link(self, link_id: int) -> None:
        await self.get_link(link_id)
        await self._store.soft_delete(link_id)

    # ========================================================================
    # REDIRECT
    # ========================================================================

    async def resolve_redirect(self, short_code: str, password: str | None = None) -> LinkSnapshot:
        """Resolve and authorize a redirect; no click is recorded here.

        Raises:
            NotFoundError: Unknown short code.
            AccessDeniedError: The access policy refused the redirect.
        """
        try:
            snapshot = await self._lookup.resolve(short_code)
            if snapshot.password_hash is not None and password:
                await asyncio.to_thread(authorize, snapshot, password, utcnow())
            else:
                authorize(snapshot, password, utcnow())
        except NotFoundError:
            REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND, reason="").inc()
            self._logger.info(f"Redirect for unknown code {short_code}")
            raise
        except AccessDeniedError as exc:
            REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.DENIED, reason=exc.reason).inc()
            self._logger.info(f"Redirect denied for {short_code}: {exc.reason}")
            raise

        REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS, reason="").inc()
        return snapshot

    def build_click_event(self, snapshot: LinkSnapshot) -> ClickEvent:
        return ClickEvent(
            link_id=snapshot.id,
            short_code=snapshot.short_code,
            ip_address=self._ctx.client_ip,
            user_agent=self._ctx.user_agent,
            referer=self._ctx.referer,
            clicked_at=utcnow(),
        )

    async def track_click(self, event: ClickEvent) -> None:
        """Hand the click to the queue; runs after the response is sent."""
        message = await self._queue.enqueue(event)
        if message is not None:
            self._logger.debug(f"Click {message.event_id} queued for {event.short_code}")

    @staticmethod
    def _status_of(exc: Exception) -> RequestStatus:
        if isinstance(exc, ConflictError):
            return RequestStatus.CONFLICT
        return RequestStatus.VALIDATION_ERROR
