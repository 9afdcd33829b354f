"""Metric aggregators.

Each aggregator reads from an ``EventStore`` through an ``EventQuery`` and is
independent of the others, so the orchestrator can run them concurrently.
An empty result set yields zero values, never an error.
"""

import asyncio
from collections.abc import Callable, Coroutine, Iterable, Mapping
from typing import Any, TypeVar

from app.models.event import EventKind
from app.schemas.analytics import (
    BrowserStat,
    CountryStat,
    DeviceCategory,
    DeviceStat,
    EventQuery,
    EventStat,
    MetricResult,
    PageStat,
    RecentEvent,
    SourceStat,
)
from app.services.date_ranges import TimeBuckets, change_percent, round2, round_half_up
from app.services.event_store import DEFAULT_DEVICE, UNKNOWN, EventStore

T = TypeVar("T")

TOP_PAGES_LIMIT = 20
TOP_LIMIT = 10
RECENT_EVENTS_LIMIT = 10

UNKNOWN_COUNTRY_CODE = "UN"


async def gather_all(calls: Mapping[str, Coroutine[Any, Any, Any]]) -> dict[str, Any]:
    """Await all coroutines in one task group and return their results by name.

    The first failure cancels the remaining tasks and is re-raised unwrapped.
    """
    try:
        async with asyncio.TaskGroup() as tg:
            tasks = {name: tg.create_task(coro) for name, coro in calls.items()}
    except ExceptionGroup as eg:
        raise eg.exceptions[0]
    return {name: task.result() for name, task in tasks.items()}


def rank(items: Iterable[T], key: Callable[[T], int], limit: int) -> list[T]:
    """Sort descending by ``key``; ties keep their incoming order."""
    return sorted(items, key=key, reverse=True)[:limit]


# --- Scalars and series ---


async def count_unique_users(store: EventStore, query: EventQuery) -> int:
    return len(await store.distinct_sessions(query, EventKind.PAGEVIEW))


async def count_page_views(store: EventStore, query: EventQuery) -> int:
    return await store.count_matching(query, EventKind.PAGEVIEW)


async def count_sessions(store: EventStore, query: EventQuery) -> int:
    return len(await store.group_by_field(query, EventKind.PAGEVIEW, "session_id"))


async def first_seen_series(
    store: EventStore, query: EventQuery, buckets: TimeBuckets
) -> list[int]:
    """Sessions per bucket, each counted once in the bucket where it first appears."""
    extents = await store.session_extents(query, EventKind.PAGEVIEW)
    return buckets.project((extent.first_seen, 1) for extent in extents)


async def page_views_series(
    store: EventStore, query: EventQuery, buckets: TimeBuckets
) -> list[int]:
    groups = await store.group_by_field(query, EventKind.PAGEVIEW, "timestamp")
    return buckets.project((group.value, group.count) for group in groups)


async def bounce_rate(store: EventStore, query: EventQuery) -> float:
    """Percentage of sessions with exactly one page view (unrounded)."""
    extents = await store.session_extents(query, EventKind.PAGEVIEW)
    if not extents:
        return 0.0
    bounced = sum(1 for extent in extents if extent.count == 1)
    return bounced / len(extents) * 100


async def avg_session_duration(store: EventStore, query: EventQuery) -> float:
    """Mean seconds between first and last page view of multi-page sessions.

    Single-page sessions are left out rather than counted as zero.
    """
    extents = await store.session_extents(query, EventKind.PAGEVIEW)
    durations = [
        (extent.last_seen - extent.first_seen).total_seconds()
        for extent in extents
        if extent.count > 1
    ]
    if not durations:
        return 0.0
    return sum(durations) / len(durations)


# --- Comparative metrics ---


def _counted_metric(results: dict[str, Any], buckets: TimeBuckets) -> MetricResult:
    return MetricResult(
        total=results["total"],
        previous_total=results["previous"],
        change_percent=change_percent(results["total"], results["previous"]),
        series=results["series"],
        labels=list(buckets.labels),
    )


async def unique_users_metric(
    store: EventStore, current: EventQuery, previous: EventQuery, buckets: TimeBuckets
) -> MetricResult:
    results = await gather_all(
        {
            "total": count_unique_users(store, current),
            "previous": count_unique_users(store, previous),
            "series": first_seen_series(store, current, buckets),
        }
    )
    return _counted_metric(results, buckets)


async def page_views_metric(
    store: EventStore, current: EventQuery, previous: EventQuery, buckets: TimeBuckets
) -> MetricResult:
    results = await gather_all(
        {
            "total": count_page_views(store, current),
            "previous": count_page_views(store, previous),
            "series": page_views_series(store, current, buckets),
        }
    )
    return _counted_metric(results, buckets)


async def sessions_metric(
    store: EventStore, current: EventQuery, previous: EventQuery, buckets: TimeBuckets
) -> MetricResult:
    results = await gather_all(
        {
            "total": count_sessions(store, current),
            "previous": count_sessions(store, previous),
            "series": first_seen_series(store, current, buckets),
        }
    )
    return _counted_metric(results, buckets)


async def bounce_rate_metric(
    store: EventStore, current: EventQuery, previous: EventQuery
) -> MetricResult:
    results = await gather_all(
        {"total": bounce_rate(store, current), "previous": bounce_rate(store, previous)}
    )
    return MetricResult(
        total=round2(results["total"]),
        previous_total=round2(results["previous"]),
        change_percent=change_percent(results["total"], results["previous"]),
    )


async def avg_session_duration_metric(
    store: EventStore, current: EventQuery, previous: EventQuery
) -> MetricResult:
    results = await gather_all(
        {
            "total": avg_session_duration(store, current),
            "previous": avg_session_duration(store, previous),
        }
    )
    return MetricResult(
        total=int(round_half_up(results["total"])),
        previous_total=int(round_half_up(results["previous"])),
        change_percent=change_percent(results["total"], results["previous"]),
    )


# --- Ranked breakdowns ---


async def top_pages(store: EventStore, query: EventQuery) -> list[PageStat]:
    groups = await store.group_by_field(query, EventKind.PAGEVIEW, "path", missing="/")
    pages = [PageStat(path=g.value, users=g.sessions, views=g.count) for g in groups]
    return rank(pages, key=lambda p: p.views, limit=TOP_PAGES_LIMIT)


async def top_sources(store: EventStore, query: EventQuery) -> list[SourceStat]:
    groups = await store.group_by_field(query, EventKind.PAGEVIEW, "source")
    sources = [SourceStat(name=g.value, users=g.sessions, sessions=g.sessions) for g in groups]
    return rank(sources, key=lambda s: s.users, limit=TOP_LIMIT)


async def top_countries(store: EventStore, query: EventQuery) -> list[CountryStat]:
    groups = await store.group_by_field(query, EventKind.PAGEVIEW, "country", missing=UNKNOWN)
    countries = [
        CountryStat(
            country=g.value,
            country_code=UNKNOWN_COUNTRY_CODE if g.value == UNKNOWN else g.value,
            users=g.sessions,
            sessions=g.sessions,
        )
        for g in groups
    ]
    return rank(countries, key=lambda c: c.users, limit=TOP_LIMIT)


async def top_browsers(store: EventStore, query: EventQuery) -> list[BrowserStat]:
    groups = await store.group_by_field(query, EventKind.PAGEVIEW, "browser", missing=UNKNOWN)
    browsers = [BrowserStat(browser=g.value, users=g.sessions, sessions=g.sessions) for g in groups]
    return rank(browsers, key=lambda b: b.users, limit=TOP_LIMIT)


def device_category(device: str | None) -> DeviceCategory:
    value = (device or "").strip().lower()
    if value == "mobile":
        return "mobile"
    if value == "tablet":
        return "tablet"
    return "desktop"


async def top_devices(store: EventStore, query: EventQuery) -> list[DeviceStat]:
    groups = await store.group_by_field(
        query, EventKind.PAGEVIEW, "device", missing=DEFAULT_DEVICE
    )
    devices = [
        DeviceStat(
            device=g.value,
            category=device_category(g.value),
            users=g.sessions,
            sessions=g.sessions,
        )
        for g in groups
    ]
    return rank(devices, key=lambda d: d.users, limit=TOP_LIMIT)


async def top_events(store: EventStore, query: EventQuery) -> list[EventStat]:
    groups = await store.group_by_field(query, EventKind.EVENT, "name", missing=UNKNOWN)
    events = [EventStat(name=g.value, count=g.count, unique_users=g.sessions) for g in groups]
    return rank(events, key=lambda e: e.count, limit=TOP_LIMIT)


async def recent_events(store: EventStore, query: EventQuery) -> list[RecentEvent]:
    return await store.recent_events(query, limit=RECENT_EVENTS_LIMIT)
