import logging

from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_analytics_cache, get_analytics_service
from app.core.cache import AnalyticsCache, analytics_cache_key
from app.core.config import settings
from app.core.limiter import limiter
from app.schemas.analytics import (
    AnalyticsQueryRequest,
    AnalyticsResponse,
    DateRangesResponse,
    DimensionFilters,
    RealtimeSummary,
)
from app.services.analytics_service import AnalyticsService, parse_project_id

logger = logging.getLogger(__name__)

router = APIRouter()


async def _cached_analytics(
    service: AnalyticsService,
    cache: AnalyticsCache,
    project_id: int | str,
    date_range: str,
    timezone: str,
    filters: DimensionFilters,
) -> AnalyticsResponse:
    """Serve from the result cache when possible, otherwise compute and store."""
    pid = parse_project_id(project_id)
    key = analytics_cache_key(pid, date_range, timezone, filters)
    cached = await cache.get(key)
    if cached is not None:
        logger.debug("Analytics cache hit for %s", key)
        return cached

    result = await service.compute_analytics(pid, date_range, timezone, filters)
    await cache.set(key, result)
    return result


@router.get("/date-ranges", response_model=DateRangesResponse)
async def get_date_ranges():
    """List the selectable date ranges."""
    return DateRangesResponse(data=AnalyticsService.get_date_ranges())


@router.post("/query", response_model=AnalyticsResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def query_analytics(
    request: Request,
    body: AnalyticsQueryRequest,
    service: AnalyticsService = Depends(get_analytics_service),
    cache: AnalyticsCache = Depends(get_analytics_cache),
):
    """Get analytics for a project with filters supplied in the request body."""
    return await _cached_analytics(
        service,
        cache,
        body.project_id,
        body.date_range or settings.DEFAULT_DATE_RANGE,
        body.timezone or settings.DEFAULT_TIMEZONE,
        body.filters or DimensionFilters(),
    )


@router.get("/{project_id}", response_model=AnalyticsResponse)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_analytics(
    request: Request,
    project_id: str,
    date_range: str = Query(settings.DEFAULT_DATE_RANGE),
    timezone: str = Query(settings.DEFAULT_TIMEZONE),
    country: str | None = Query(None, description="Comma-separated country filter"),
    browser: str | None = Query(None, description="Comma-separated browser filter"),
    device: str | None = Query(None, description="Comma-separated device filter"),
    source: str | None = Query(None, description="Comma-separated source filter"),
    service: AnalyticsService = Depends(get_analytics_service),
    cache: AnalyticsCache = Depends(get_analytics_cache),
):
    """Get comparative analytics for a project."""
    filters = DimensionFilters.from_query(
        country=country, browser=browser, device=device, source=source
    )
    return await _cached_analytics(service, cache, project_id, date_range, timezone, filters)


@router.get("/{project_id}/realtime", response_model=RealtimeSummary)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_realtime(
    request: Request,
    project_id: str,
    service: AnalyticsService = Depends(get_analytics_service),
):
    """Get a last-hour snapshot for the live view."""
    return await service.realtime_summary(project_id)
