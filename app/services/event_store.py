"""Read-only query interface over the tracked event log.

Every call opens its own session so independent aggregators can run
concurrently without sharing an ``AsyncSession``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, NamedTuple, Protocol
from urllib.parse import urlsplit

from sqlalchemy import ColumnElement, and_, distinct, func, literal, literal_column, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import QueryCollaboratorError
from app.models.event import Event, EventKind
from app.models.project import Project
from app.schemas.analytics import EventQuery, RecentEvent
from app.services.date_ranges import as_utc

logger = logging.getLogger(__name__)

DIRECT_SOURCE = "Direct"
UNKNOWN = "Unknown"
UNKNOWN_SOURCE = UNKNOWN
DEFAULT_DEVICE = "desktop"

# Dimensions that can be grouped on directly in SQL
GROUPABLE_FIELDS = {
    "path": Event.path,
    "country": Event.country,
    "browser": Event.browser,
    "os": Event.os,
    "device": Event.device,
    "name": Event.name,
    "referrer": Event.referrer,
    "session_id": Event.session_id,
}


class FieldGroup(NamedTuple):
    value: Any
    count: int
    sessions: int


class SessionExtent(NamedTuple):
    session_id: str
    first_seen: datetime
    last_seen: datetime
    count: int


def source_key(referrer: str | None) -> str:
    """Traffic source for a referrer: ``Direct``, its host, or ``Unknown``."""
    if not referrer or not referrer.strip():
        return DIRECT_SOURCE
    try:
        parts = urlsplit(referrer.strip())
    except ValueError:
        return UNKNOWN_SOURCE
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return UNKNOWN_SOURCE
    return parts.netloc.lower()


class EventStore(Protocol):
    """Queries the aggregation engine needs from storage."""

    async def project_exists(self, project_id: int) -> bool: ...

    async def count_matching(self, query: EventQuery, kind: EventKind) -> int: ...

    async def distinct_sessions(self, query: EventQuery, kind: EventKind) -> set[str]: ...

    async def group_by_field(
        self, query: EventQuery, kind: EventKind, field: str, missing: str | None = None
    ) -> list[FieldGroup]: ...

    async def session_extents(
        self, query: EventQuery, kind: EventKind = EventKind.PAGEVIEW
    ) -> list[SessionExtent]: ...

    async def recent_events(self, query: EventQuery, limit: int = 10) -> list[RecentEvent]: ...


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _source_condition(values: list[str]) -> ColumnElement[bool]:
    """Match records whose derived source key is one of ``values``."""
    referrer = func.lower(func.trim(Event.referrer))
    clauses: list[ColumnElement[bool]] = []
    for value in values:
        if value == DIRECT_SOURCE:
            clauses.append(or_(Event.referrer.is_(None), func.trim(Event.referrer) == ""))
        elif value == UNKNOWN_SOURCE:
            clauses.append(
                and_(
                    func.trim(Event.referrer) != "",
                    ~referrer.like("http://_%"),
                    ~referrer.like("https://_%"),
                )
            )
        else:
            host = value.lower()
            escaped = _escape_like(host)
            for scheme in ("http", "https"):
                clauses.append(referrer == f"{scheme}://{host}")
                for sep in ("/", "?", "#"):
                    clauses.append(referrer.like(f"{scheme}://{escaped}{sep}%", escape="\\"))
    return or_(*clauses)


def _dimension_condition(
    column: ColumnElement[Any], values: list[str], fallback: str
) -> ColumnElement[bool]:
    """Match ``values``, treating NULL and empty as ``fallback`` like the ranked lists do."""
    condition = column.in_(values)
    if fallback in values:
        condition = or_(condition, column.is_(None), column == "")
    return condition


def build_conditions(query: EventQuery, kind: EventKind | None = None) -> list[ColumnElement[bool]]:
    """Translate an ``EventQuery`` into SQL predicates.

    Window bounds are bound as UTC; the window is closed on both ends.
    """
    conditions: list[ColumnElement[bool]] = [
        Event.project_id == query.project_id,
        Event.timestamp >= as_utc(query.window.start),
        Event.timestamp <= as_utc(query.window.end),
    ]
    if kind is not None:
        conditions.append(Event.kind == EventKind(kind).value)

    filters = query.filters
    if filters.country:
        conditions.append(_dimension_condition(Event.country, filters.country, UNKNOWN))
    if filters.browser:
        conditions.append(_dimension_condition(Event.browser, filters.browser, UNKNOWN))
    if filters.device:
        conditions.append(_dimension_condition(Event.device, filters.device, DEFAULT_DEVICE))
    if filters.source:
        conditions.append(_source_condition(filters.source))
    return conditions


class SQLEventStore:
    """``EventStore`` backed by the ``events`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Event store query failed: %s", exc)
            raise QueryCollaboratorError() from exc

    async def project_exists(self, project_id: int) -> bool:
        async with self._session() as session:
            result = await session.execute(select(Project.id).where(Project.id == project_id))
            return result.scalar_one_or_none() is not None

    async def count_matching(self, query: EventQuery, kind: EventKind) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(Event).where(*build_conditions(query, kind))
            )
            return result.scalar_one()

    async def distinct_sessions(self, query: EventQuery, kind: EventKind) -> set[str]:
        async with self._session() as session:
            result = await session.execute(
                select(Event.session_id).distinct().where(*build_conditions(query, kind))
            )
            return set(result.scalars().all())

    async def group_by_field(
        self, query: EventQuery, kind: EventKind, field: str, missing: str | None = None
    ) -> list[FieldGroup]:
        """Group matching records by ``field``.

        Groups are returned in first-seen order (earliest record, then value)
        so that callers can rank them with a stable sort. Empty strings are
        grouped together with NULL, and that group is labelled ``missing``
        when given.
        """
        if field == "source":
            return await self._group_by_source(query, kind)
        if field == "timestamp":
            key = Event.timestamp
        elif field in GROUPABLE_FIELDS:
            # Literal rather than a bound parameter so GROUP BY matches the select
            key = func.nullif(GROUPABLE_FIELDS[field], literal_column("''"))
            if missing is not None:
                key = func.coalesce(key, literal(missing, literal_execute=True))
        else:
            raise ValueError(f"Unsupported group-by field: {field}")

        first_seen = func.min(Event.timestamp)
        async with self._session() as session:
            result = await session.execute(
                select(
                    key.label("value"),
                    func.count().label("cnt"),
                    func.count(distinct(Event.session_id)).label("sessions"),
                )
                .where(*build_conditions(query, kind))
                .group_by(key)
                .order_by(first_seen, key)
            )
            rows = result.all()

        if field == "timestamp":
            return [FieldGroup(as_utc(row[0]), row[1], row[2]) for row in rows]
        return [FieldGroup(row[0], row[1], row[2]) for row in rows]

    async def _group_by_source(self, query: EventQuery, kind: EventKind) -> list[FieldGroup]:
        """Fold (referrer, session) groups into derived source keys."""
        first_seen = func.min(Event.timestamp)
        async with self._session() as session:
            result = await session.execute(
                select(Event.referrer, Event.session_id, func.count())
                .where(*build_conditions(query, kind))
                .group_by(Event.referrer, Event.session_id)
                .order_by(first_seen, Event.referrer, Event.session_id)
            )
            rows = result.all()

        counts: dict[str, int] = {}
        sessions: dict[str, set[str]] = {}
        for referrer, session_id, cnt in rows:
            key = source_key(referrer)
            counts[key] = counts.get(key, 0) + cnt
            sessions.setdefault(key, set()).add(session_id)
        return [FieldGroup(key, counts[key], len(sessions[key])) for key in counts]

    async def session_extents(
        self, query: EventQuery, kind: EventKind = EventKind.PAGEVIEW
    ) -> list[SessionExtent]:
        first_seen = func.min(Event.timestamp)
        async with self._session() as session:
            result = await session.execute(
                select(
                    Event.session_id,
                    first_seen.label("first_seen"),
                    func.max(Event.timestamp).label("last_seen"),
                    func.count().label("cnt"),
                )
                .where(*build_conditions(query, kind))
                .group_by(Event.session_id)
                .order_by(first_seen, Event.session_id)
            )
            return [
                SessionExtent(row[0], as_utc(row[1]), as_utc(row[2]), row[3])
                for row in result.all()
            ]

    async def recent_events(self, query: EventQuery, limit: int = 10) -> list[RecentEvent]:
        async with self._session() as session:
            result = await session.execute(
                select(Event)
                .where(*build_conditions(query, EventKind.EVENT))
                .order_by(Event.timestamp.desc(), Event.id.desc())
                .limit(limit)
            )
            events = result.scalars().all()
            return [
                RecentEvent(
                    name=event.name or "",
                    url=event.url,
                    path=event.path,
                    session_id=event.session_id,
                    timestamp=as_utc(event.timestamp),
                    country=event.country,
                    browser=event.browser,
                    device=event.device,
                    payload=event.payload,
                )
                for event in events
            ]
