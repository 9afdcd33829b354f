from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for analytics payloads: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TimeWindow(CamelModel):
    """Closed time interval; both ends are timezone-aware."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> "TimeWindow":
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("time window bounds must be timezone-aware")
        if self.start > self.end:
            raise ValueError("time window start must not be after its end")
        return self


class DimensionFilters(CamelModel):
    """Optional narrowing: OR within a field, AND across fields."""

    model_config = ConfigDict(frozen=True)

    country: list[str] = Field(default_factory=list)
    browser: list[str] = Field(default_factory=list)
    device: list[str] = Field(default_factory=list)
    source: list[str] = Field(default_factory=list)

    @field_validator("country", "browser", "device", "source", mode="before")
    @classmethod
    def normalize_values(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, list):
            # Non-strings are left in place for type validation to reject
            return [
                s.strip() if isinstance(s, str) else s
                for s in v
                if not isinstance(s, str) or s.strip()
            ]
        return v

    @classmethod
    def from_query(
        cls,
        country: str | None = None,
        browser: str | None = None,
        device: str | None = None,
        source: str | None = None,
    ) -> "DimensionFilters":
        """Build filters from comma-separated query string values."""
        return cls(country=country, browser=browser, device=device, source=source)


class EventQuery(BaseModel):
    """Typed predicate passed to every store call: project + window + dimensions."""

    model_config = ConfigDict(frozen=True)

    project_id: int = Field(..., gt=0)
    window: TimeWindow
    filters: DimensionFilters = Field(default_factory=DimensionFilters)


class MetricResult(CamelModel):
    """Scalar with previous-period comparison and an optional bucketed series."""

    total: int | float
    previous_total: int | float
    change_percent: float
    series: list[int] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)


class PageStat(CamelModel):
    path: str
    users: int
    views: int


class SourceStat(CamelModel):
    name: str
    users: int
    sessions: int


class CountryStat(CamelModel):
    country: str
    country_code: str
    users: int
    sessions: int


class BrowserStat(CamelModel):
    browser: str
    users: int
    sessions: int


DeviceCategory = Literal["desktop", "mobile", "tablet"]


class DeviceStat(CamelModel):
    device: str
    category: DeviceCategory
    users: int
    sessions: int


class EventStat(CamelModel):
    name: str
    count: int
    unique_users: int


class RecentEvent(CamelModel):
    """A custom event as shown in the live feed."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    url: str
    path: str
    session_id: str
    timestamp: datetime
    country: str | None = None
    browser: str | None = None
    device: str | None = None
    payload: dict[str, Any] | None = None


class AnalyticsResponse(CamelModel):
    """Unified analytics payload for one project and date range."""

    time_range: TimeWindow
    granularity: str
    unique_users: MetricResult
    page_views: MetricResult
    sessions: MetricResult
    bounce_rate: MetricResult
    avg_session_duration: MetricResult
    pages: list[PageStat]
    sources: list[SourceStat]
    countries: list[CountryStat]
    browsers: list[BrowserStat]
    devices: list[DeviceStat]
    top_events: list[EventStat]
    recent_events: list[RecentEvent] = Field(default_factory=list)


class AnalyticsQueryRequest(CamelModel):
    """Body of ``POST /analytics/query``."""

    project_id: int | str
    date_range: str | None = None
    timezone: str | None = None
    filters: DimensionFilters | None = None


class RealtimeSummary(CamelModel):
    """Last-hour snapshot for the live view."""

    active_users: int
    page_views: int
    sessions: int
    top_pages: list[PageStat]
    recent_events: list[RecentEvent]


class DateRangeOut(CamelModel):
    """Public description of a selectable date range."""

    key: str
    label: str
    granularity: str
    data_points: int


class DateRangesResponse(BaseModel):
    data: list[DateRangeOut]
