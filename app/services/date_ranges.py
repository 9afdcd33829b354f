"""Date range resolution, time bucketing and period comparison.

All windows are timezone-aware and expressed in the caller's timezone so that
day/week/month boundaries and bucket labels follow the local calendar.
Minute and hour steps are absolute; day, week and month steps are wall-clock.
"""

import bisect
import calendar
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.exceptions import InvalidRangeKeyError, InvalidTimezoneError
from app.schemas.analytics import TimeWindow

logger = logging.getLogger(__name__)

# Bump when bucket boundaries or labels change, so cached series are not reused.
BUCKETING_VERSION = 1

ONE_MS = timedelta(milliseconds=1)


class Granularity(str, enum.Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def is_calendar(self) -> bool:
        """Day-aligned granularities, stepped on the local wall clock."""
        return self in (Granularity.DAY, Granularity.WEEK, Granularity.MONTH)


@dataclass(frozen=True)
class DateRange:
    """A selectable date range; ``data_points`` is the expected bucket count."""

    key: str
    label: str
    duration: timedelta
    granularity: Granularity
    data_points: int


DATE_RANGES: dict[str, DateRange] = {
    r.key: r
    for r in (
        DateRange("LAST_HOUR", "Last Hour", timedelta(hours=1), Granularity.MINUTE, 60),
        DateRange("LAST_24_HOURS", "Last 24 Hours", timedelta(hours=24), Granularity.HOUR, 24),
        DateRange("LAST_7_DAYS", "Last 7 Days", timedelta(days=7), Granularity.DAY, 7),
        DateRange("LAST_30_DAYS", "Last 30 Days", timedelta(days=30), Granularity.DAY, 30),
        # Months are approximated as 30 days
        DateRange("LAST_6_MONTHS", "Last 6 Months", timedelta(days=180), Granularity.WEEK, 26),
        DateRange("LAST_12_MONTHS", "Last 12 Months", timedelta(days=360), Granularity.MONTH, 12),
    )
}


@dataclass(frozen=True)
class ResolvedRange:
    current: TimeWindow
    previous: TimeWindow
    config: DateRange

    @property
    def granularity(self) -> Granularity:
        return self.config.granularity


def as_utc(ts: datetime) -> datetime:
    """Normalize a timestamp to aware UTC; naive values are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def get_timezone(name: str | None) -> ZoneInfo:
    """Resolve an IANA timezone name, failing closed on anything unknown."""
    if not name or not isinstance(name, str):
        raise InvalidTimezoneError(f"Invalid timezone: {name!r}")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidTimezoneError(f"Invalid timezone: {name}") from None


def get_date_range(key: str) -> DateRange:
    config = DATE_RANGES.get(key)
    if config is None:
        raise InvalidRangeKeyError(
            f"Invalid date range: {key}. Supported ranges: {', '.join(DATE_RANGES)}"
        )
    return config


def list_date_ranges() -> list[DateRange]:
    return list(DATE_RANGES.values())


def resolve_range(
    range_key: str, tz_name: str = "UTC", now: datetime | None = None
) -> ResolvedRange:
    """Compute the current window, the preceding window and the granularity.

    Minute/hour ranges cover ``[now - duration, now)``. Day/week/month ranges
    cover whole local days ending today: from midnight ``days - 1`` days ago
    through ``23:59:59.999`` today. The previous window ends 1 ms before the
    current one starts and reaches back one full duration from its own end.
    """
    config = get_date_range(range_key)
    tz = get_timezone(tz_name)
    now_utc = as_utc(now or datetime.now(timezone.utc))

    if config.granularity.is_calendar:
        today = now_utc.astimezone(tz).replace(hour=0, minute=0, second=0, microsecond=0)
        # Same-tzinfo arithmetic below is wall-clock, so DST days stay aligned
        start = today - (config.duration - timedelta(days=1))
        end = today + timedelta(days=1) - ONE_MS
        previous_end = start - ONE_MS
        previous = TimeWindow(start=previous_end - config.duration, end=previous_end)
    else:
        start_utc = now_utc - config.duration
        start = start_utc.astimezone(tz)
        end = (now_utc - ONE_MS).astimezone(tz)
        previous_end_utc = start_utc - ONE_MS
        previous = TimeWindow(
            start=(previous_end_utc - config.duration).astimezone(tz),
            end=previous_end_utc.astimezone(tz),
        )

    return ResolvedRange(
        current=TimeWindow(start=start, end=end),
        previous=previous,
        config=config,
    )


def add_months(dt: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def step(origin: datetime, granularity: Granularity, n: int) -> datetime:
    """Return the start of bucket ``n`` for a walk beginning at ``origin``."""
    if granularity is Granularity.MINUTE:
        return (as_utc(origin) + timedelta(minutes=n)).astimezone(origin.tzinfo)
    if granularity is Granularity.HOUR:
        return (as_utc(origin) + timedelta(hours=n)).astimezone(origin.tzinfo)
    if granularity is Granularity.DAY:
        return origin + timedelta(days=n)
    if granularity is Granularity.WEEK:
        return origin + timedelta(weeks=n)
    if granularity is Granularity.MONTH:
        # Always measured from the origin so clamped days don't drift
        return add_months(origin, n)
    raise ValueError(f"Unsupported granularity: {granularity}")


def format_label(ts: datetime, granularity: Granularity) -> str:
    if granularity is Granularity.MINUTE:
        return ts.strftime("%H:%M")
    if granularity is Granularity.HOUR:
        return ts.strftime("%H:00")
    if granularity is Granularity.DAY:
        return f"{ts:%b} {ts.day}"
    if granularity is Granularity.WEEK:
        return f"Week of {ts:%b} {ts.day}"
    if granularity is Granularity.MONTH:
        return ts.strftime("%b %Y")
    return ts.isoformat()


class TimeBuckets:
    """Ordered, contiguous buckets covering a window.

    Bucket ``i`` spans ``[starts[i], starts[i + 1])``; the last one ends one
    granularity unit after its start and may extend past the window end.
    """

    def __init__(self, starts: list[datetime], end: datetime, granularity: Granularity):
        self.starts = starts
        self.end = end
        self.granularity = granularity
        self.labels = [format_label(s, granularity) for s in starts]
        self._edges = [as_utc(s) for s in starts]
        self._end_utc = as_utc(end)

    def __len__(self) -> int:
        return len(self.starts)

    def index(self, ts: datetime) -> int | None:
        """Bucket index containing ``ts``, or None if it falls outside all buckets."""
        ts = as_utc(ts)
        i = bisect.bisect_right(self._edges, ts) - 1
        if i < 0 or ts >= self._end_utc:
            return None
        return i

    def project(self, points: Iterable[tuple[datetime, int]]) -> list[int]:
        """Sum ``(timestamp, count)`` points into a zero-filled series."""
        series = [0] * len(self.starts)
        for ts, count in points:
            i = self.index(ts)
            if i is not None:
                series[i] += count
        return series


def generate_buckets(window: TimeWindow, granularity: Granularity) -> TimeBuckets:
    """Walk from ``window.start`` one unit at a time while the step is <= ``window.end``."""
    granularity = Granularity(granularity)
    end_utc = as_utc(window.end)
    starts: list[datetime] = []
    n = 0
    while True:
        bucket_start = step(window.start, granularity, n)
        if as_utc(bucket_start) > end_utc:
            break
        starts.append(bucket_start)
        n += 1
    return TimeBuckets(starts, step(window.start, granularity, n), granularity)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a calculator (0.5 away from zero), not banker's rounding."""
    exp = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(value)).quantize(exp, rounding=ROUND_HALF_UP))


def round2(value: float) -> float:
    return round_half_up(value, 2)


def change_percent(current: float, previous: float) -> float:
    """Signed percentage change from ``previous`` to ``current``.

    A zero previous value yields 100 when there is any current value, else 0.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round2((current - previous) / previous * 100)
