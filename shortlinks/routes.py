"""FastAPI route definitions for the short-link REST API.

API Endpoint Overview
=====================
::
    GET    /health                                  HealthResponse
    POST   /api/links                               LinkResponse (201)
    POST   /api/links/bulk                          BulkCreateResponse (201)
    GET    /api/links?page=&limit=                  LinkListResponse
    GET    /api/links/{id}                          LinkResponse
    PATCH  /api/links/{id}                          LinkResponse
    DELETE /api/links/{id}                          204
    GET    /api/analytics/{code}/overview           OverviewStats
    GET    /api/analytics/{code}/timeline           TimelineStats
    GET    /api/analytics/{code}/locations          LocationStats
    GET    /api/analytics/{code}/devices            DeviceStats
    GET    /api/analytics/{code}/referrers          ReferrerStats
    GET    /api/analytics/{code}/heatmap            HeatmapStats
    GET    /api/analytics/{code}/export             text/csv attachment
    GET    /{code}?password=                        302 or ErrorResponse

Key Behaviours
===============
- The caller identity comes from ``X-User-Id`` / ``X-User-Role``.
- Service exceptions are turned into ``ErrorResponse`` bodies by the
  handlers registered in ``shortlinks.main``.
- The redirect responds first; the click is queued as a background task.
- ``/{code}`` is registered last so it never shadows the API routes.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from shortlinks.analytics import AnalyticsAggregator
from shortlinks.dependencies import RequestContext, get_analytics, get_link_service, get_request_context
from shortlinks.enums import HealthStatus, TimelineInterval
from shortlinks.link_service import LinkService
from shortlinks.schemas import (
    BulkCreateResponse,
    BulkLinkCreate,
    DeviceStats,
    ErrorResponse,
    HealthResponse,
    HeatmapStats,
    LinkCreate,
    LinkListResponse,
    LinkResponse,
    LinkUpdate,
    LocationStats,
    OverviewStats,
    ReferrerStats,
    TimelineStats,
)

__all__ = ["router"]

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


# ----------------------------------------------------------------------------
# Link management
# ----------------------------------------------------------------------------


@router.post(
    "/api/links", response_model=LinkResponse, status_code=201, tags=["links"], responses=ERROR_RESPONSES
)
async def create_link(payload: LinkCreate, service: LinkService = Depends(get_link_service)) -> LinkResponse:
    link = await service.create_link(payload)
    return LinkResponse.from_model(link, service.settings.BASE_URL)


@router.post(
    "/api/links/bulk", response_model=BulkCreateResponse, status_code=201, tags=["links"], responses=ERROR_RESPONSES
)
async def bulk_create_links(
    payload: BulkLinkCreate,
    service: LinkService = Depends(get_link_service),
) -> BulkCreateResponse:
    result = await service.bulk_create(payload.links)
    return BulkCreateResponse(
        created=len(result.created),
        skipped=len(result.skipped),
        links=[LinkResponse.from_model(link, service.settings.BASE_URL) for link in result.created],
        skipped_items=result.skipped,
    )


@router.get("/api/links", response_model=LinkListResponse, tags=["links"], responses=ERROR_RESPONSES)
async def list_links(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: LinkService = Depends(get_link_service),
) -> LinkListResponse:
    links, total = await service.list_links(page, limit)
    return LinkListResponse(
        items=[LinkResponse.from_model(link, service.settings.BASE_URL) for link in links],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/api/links/{link_id}", response_model=LinkResponse, tags=["links"], responses=ERROR_RESPONSES)
async def get_link(link_id: int, service: LinkService = Depends(get_link_service)) -> LinkResponse:
    link = await service.get_link(link_id)
    return LinkResponse.from_model(link, service.settings.BASE_URL)


@router.patch("/api/links/{link_id}", response_model=LinkResponse, tags=["links"], responses=ERROR_RESPONSES)
async def update_link(
    link_id: int,
    payload: LinkUpdate,
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.update_link(link_id, payload)
    return LinkResponse.from_model(link, service.settings.BASE_URL)


@router.delete("/api/links/{link_id}", status_code=204, tags=["links"], responses=ERROR_RESPONSES)
async def delete_link(link_id: int, service: LinkService = Depends(get_link_service)) -> Response:
    await service.delete_link(link_id)
    return Response(status_code=204)


# ----------------------------------------------------------------------------
# Analytics
# ----------------------------------------------------------------------------


@router.get("/api/analytics/{short_code}/overview", response_model=OverviewStats, tags=["analytics"])
async def analytics_overview(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> OverviewStats:
    return await analytics.overview(short_code, ctx.principal)


@router.get("/api/analytics/{short_code}/timeline", response_model=TimelineStats, tags=["analytics"])
async def analytics_timeline(
    short_code: str,
    interval: TimelineInterval = Query(TimelineInterval.DAY),
    days: int = Query(30),
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> TimelineStats:
    return await analytics.timeline(short_code, ctx.principal, interval, days)


@router.get("/api/analytics/{short_code}/locations", response_model=LocationStats, tags=["analytics"])
async def analytics_locations(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> LocationStats:
    return await analytics.locations(short_code, ctx.principal)


@router.get("/api/analytics/{short_code}/devices", response_model=DeviceStats, tags=["analytics"])
async def analytics_devices(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> DeviceStats:
    return await analytics.devices(short_code, ctx.principal)


@router.get("/api/analytics/{short_code}/referrers", response_model=ReferrerStats, tags=["analytics"])
async def analytics_referrers(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> ReferrerStats:
    return await analytics.referrers(short_code, ctx.principal)


@router.get("/api/analytics/{short_code}/heatmap", response_model=HeatmapStats, tags=["analytics"])
async def analytics_heatmap(
    short_code: str,
    days: int = Query(7),
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> HeatmapStats:
    return await analytics.heatmap(short_code, ctx.principal, days)


@router.get("/api/analytics/{short_code}/export", tags=["analytics"])
async def analytics_export(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
) -> Response:
    body = await analytics.export_csv(short_code, ctx.principal)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{short_code}-clicks.csv"'},
    )


# ----------------------------------------------------------------------------
# Redirect (must stay last)
# ----------------------------------------------------------------------------


@router.get("/{short_code}", status_code=302, tags=["redirect"], responses=ERROR_RESPONSES)
async def redirect_to_destination(
    short_code: str,
    background_tasks: BackgroundTasks,
    password: str | None = Query(None),
    service: LinkService = Depends(get_link_service),
) -> RedirectResponse:
    snapshot = await service.resolve_redirect(short_code, password)
    background_tasks.add_task(service.track_click, service.build_click_event(snapshot))
    return RedirectResponse(url=snapshot.destination_url, status_code=302)
