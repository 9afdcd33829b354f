import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime, timezone
from typing import Any

from app.core.config import settings
from app.core.exceptions import (
    InvalidProjectIdError,
    PartialAggregationError,
    ProjectNotFoundError,
    QueryCollaboratorError,
)
from app.schemas.analytics import (
    AnalyticsResponse,
    DateRangeOut,
    DimensionFilters,
    EventQuery,
    RealtimeSummary,
)
from app.services import aggregators
from app.services.date_ranges import generate_buckets, list_date_ranges, resolve_range
from app.services.event_store import EventStore

logger = logging.getLogger(__name__)

REALTIME_RANGE = "LAST_HOUR"
REALTIME_TOP_PAGES = 5


def parse_project_id(project_id: Any) -> int:
    """Validate a project id: a positive integer, given as int or digit string."""
    if isinstance(project_id, bool):
        raise InvalidProjectIdError()
    if isinstance(project_id, int):
        value = project_id
    elif isinstance(project_id, str) and project_id.strip().isdigit():
        value = int(project_id.strip())
    else:
        raise InvalidProjectIdError()
    if value <= 0:
        raise InvalidProjectIdError()
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsService:
    """Computes comparative, time-bucketed analytics for a project."""

    def __init__(
        self,
        store: EventStore,
        clock: Callable[[], datetime] = _utcnow,
        timeout_seconds: float | None = None,
    ):
        self.store = store
        self.clock = clock
        self.timeout_seconds = (
            settings.ANALYTICS_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )

    @staticmethod
    def get_date_ranges() -> list[DateRangeOut]:
        """Describe the selectable date ranges."""
        return [
            DateRangeOut(
                key=r.key,
                label=r.label,
                granularity=r.granularity.value,
                data_points=r.data_points,
            )
            for r in list_date_ranges()
        ]

    async def compute_analytics(
        self,
        project_id: int | str,
        date_range: str,
        timezone: str = "UTC",
        filters: DimensionFilters | None = None,
    ) -> AnalyticsResponse:
        """Compute every metric for the current window against the previous one.

        Validation happens before the store is touched for aggregation. All
        aggregators run concurrently; if any fails, the rest are cancelled and
        the request fails as a whole.
        """
        pid = parse_project_id(project_id)
        resolved = resolve_range(date_range, timezone, now=self.clock())
        filters = filters or DimensionFilters()

        if not await self.store.project_exists(pid):
            raise ProjectNotFoundError()

        current = EventQuery(project_id=pid, window=resolved.current, filters=filters)
        previous = EventQuery(project_id=pid, window=resolved.previous, filters=filters)
        buckets = generate_buckets(resolved.current, resolved.granularity)
        if len(buckets) != resolved.config.data_points:
            logger.warning(
                "Range %s produced %d buckets (expected %d)",
                date_range,
                len(buckets),
                resolved.config.data_points,
            )

        store = self.store
        calls = {
            "unique_users": aggregators.unique_users_metric(store, current, previous, buckets),
            "page_views": aggregators.page_views_metric(store, current, previous, buckets),
            "sessions": aggregators.sessions_metric(store, current, previous, buckets),
            "bounce_rate": aggregators.bounce_rate_metric(store, current, previous),
            "avg_session_duration": aggregators.avg_session_duration_metric(
                store, current, previous
            ),
            "pages": aggregators.top_pages(store, current),
            "sources": aggregators.top_sources(store, current),
            "countries": aggregators.top_countries(store, current),
            "browsers": aggregators.top_browsers(store, current),
            "devices": aggregators.top_devices(store, current),
            "top_events": aggregators.top_events(store, current),
            "recent_events": aggregators.recent_events(store, current),
        }
        results = await self._fan_out(calls)

        return AnalyticsResponse(
            time_range=resolved.current,
            granularity=resolved.granularity.value,
            **results,
        )

    async def realtime_summary(self, project_id: int | str) -> RealtimeSummary:
        """Last-hour snapshot in UTC."""
        data = await self.compute_analytics(project_id, REALTIME_RANGE, "UTC")
        return RealtimeSummary(
            active_users=data.unique_users.total,
            page_views=data.page_views.total,
            sessions=data.sessions.total,
            top_pages=data.pages[:REALTIME_TOP_PAGES],
            recent_events=data.recent_events,
        )

    async def _fan_out(self, calls: dict[str, Coroutine[Any, Any, Any]]) -> dict[str, Any]:
        guarded = {name: self._guard(name, coro) for name, coro in calls.items()}
        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await aggregators.gather_all(guarded)
        except TimeoutError:
            logger.error("Analytics aggregation timed out after %.1fs", self.timeout_seconds)
            raise QueryCollaboratorError("Analytics query timed out") from None

    @staticmethod
    async def _guard(name: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        except Exception as exc:
            logger.error("Aggregator %s failed: %r", name, exc)
            raise PartialAggregationError(name) from exc
