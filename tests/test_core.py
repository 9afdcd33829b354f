"""Unit tests for core modules."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.cache import AnalyticsCache, analytics_cache_key
from app.core.config import Settings
from app.core.exceptions import (
    InvalidProjectIdError,
    PartialAggregationError,
    ProjectNotFoundError,
    QueryCollaboratorError,
)
from app.schemas.analytics import DimensionFilters
from app.services.aggregators import device_category, rank
from app.services.analytics_service import parse_project_id
from app.services.date_ranges import BUCKETING_VERSION
from app.services.event_store import source_key


class TestExceptions:
    """Tests for the HTTP error hierarchy."""

    def test_status_codes(self):
        assert InvalidProjectIdError().status_code == 400
        assert ProjectNotFoundError().status_code == 404
        assert QueryCollaboratorError().status_code == 503

    def test_default_detail_is_generic(self):
        assert QueryCollaboratorError().detail == "Analytics data is temporarily unavailable"

    def test_partial_aggregation_names_aggregator(self):
        exc = PartialAggregationError("bounce_rate")
        assert exc.aggregator == "bounce_rate"
        assert exc.status_code == 503
        assert exc.detail == "Failed to compute analytics (bounce_rate)"


class TestSettings:
    """Tests for settings validation."""

    def test_defaults(self):
        s = Settings()
        assert s.DEFAULT_DATE_RANGE == "LAST_7_DAYS"
        assert s.DEFAULT_TIMEZONE == "UTC"

    def test_pool_covers_one_request_fan_out(self):
        s = Settings()
        # 13 queries for the five metrics plus 7 for the ranked lists
        assert s.DB_POOL_SIZE >= 20

    def test_rejects_unknown_range(self):
        with pytest.raises(ValidationError):
            Settings(DEFAULT_DATE_RANGE="LAST_WEEK")

    def test_rejects_unknown_timezone(self):
        with pytest.raises(ValidationError):
            Settings(DEFAULT_TIMEZONE="Mars/Olympus")

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            Settings(ANALYTICS_TIMEOUT_SECONDS=0)

    def test_rejects_negative_cache_ttl(self):
        with pytest.raises(ValidationError):
            Settings(ANALYTICS_CACHE_TTL_SECONDS=-1)


class TestParsing:
    """Tests for request value parsing."""

    @pytest.mark.parametrize("value,expected", [(7, 7), ("7", 7), (" 12 ", 12)])
    def test_parse_project_id(self, value, expected):
        assert parse_project_id(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", "0", "-5", 0, -1, 2.0, False])
    def test_parse_project_id_rejects(self, value):
        with pytest.raises(InvalidProjectIdError):
            parse_project_id(value)

    def test_filters_from_query(self):
        filters = DimensionFilters.from_query(country="US, DE,,", device=" mobile ")
        assert filters.country == ["US", "DE"]
        assert filters.device == ["mobile"]
        assert filters.browser == []

    def test_filters_accept_camel_and_lists(self):
        filters = DimensionFilters.model_validate({"source": ["google.com", " Direct "]})
        assert filters.source == ["google.com", "Direct"]

    @pytest.mark.parametrize(
        "referrer,expected",
        [
            (None, "Direct"),
            ("", "Direct"),
            ("   ", "Direct"),
            ("https://www.Google.com/search?q=1", "www.google.com"),
            ("http://news.ycombinator.com", "news.ycombinator.com"),
            ("android-app://com.slack", "Unknown"),
            ("not a url", "Unknown"),
        ],
    )
    def test_source_key(self, referrer, expected):
        assert source_key(referrer) == expected

    @pytest.mark.parametrize(
        "device,expected",
        [("Mobile", "mobile"), ("tablet", "tablet"), ("desktop", "desktop"), (None, "desktop"), ("tv", "desktop")],
    )
    def test_device_category(self, device, expected):
        assert device_category(device) == expected

    def test_rank_is_stable(self):
        items = [("a", 1), ("b", 3), ("c", 1), ("d", 3)]
        assert rank(items, key=lambda i: i[1], limit=3) == [("b", 3), ("d", 3), ("a", 1)]


class TestCacheKey:
    """Tests for analytics_cache_key."""

    def test_key_includes_request_and_version(self):
        key = analytics_cache_key(3, "LAST_7_DAYS", "Europe/Berlin", DimensionFilters())
        assert key.startswith(f"analytics:result:v{BUCKETING_VERSION}:3:LAST_7_DAYS:Europe/Berlin:")

    def test_filter_order_does_not_matter(self):
        a = analytics_cache_key(1, "LAST_HOUR", "UTC", DimensionFilters(country=["US", "DE"]))
        b = analytics_cache_key(1, "LAST_HOUR", "UTC", DimensionFilters(country=["DE", "US"]))
        assert a == b

    def test_different_filters_different_keys(self):
        a = analytics_cache_key(1, "LAST_HOUR", "UTC", DimensionFilters(country=["US"]))
        b = analytics_cache_key(1, "LAST_HOUR", "UTC", DimensionFilters(browser=["US"]))
        c = analytics_cache_key(1, "LAST_HOUR", "UTC", None)
        assert len({a, b, c}) == 3
        assert c == analytics_cache_key(1, "LAST_HOUR", "UTC", DimensionFilters())


class TestAnalyticsCache:
    """Tests for the fail-open result cache."""

    @pytest.mark.asyncio
    async def test_disabled_with_zero_ttl(self, fake_redis):
        cache = AnalyticsCache(fake_redis, ttl_seconds=0)
        assert not cache.enabled
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_a_miss(self, fake_redis):
        await fake_redis.set("analytics:result:bad", "{not json")
        cache = AnalyticsCache(fake_redis, ttl_seconds=30)
        assert await cache.get("analytics:result:bad") is None

    @pytest.mark.asyncio
    async def test_redis_errors_are_a_miss(self):
        broken = AsyncMock()
        broken.get = AsyncMock(side_effect=RedisConnectionError("down"))
        broken.setex = AsyncMock(side_effect=RedisConnectionError("down"))
        cache = AnalyticsCache(broken, ttl_seconds=30)

        assert await cache.get("analytics:result:x") is None
        # Writes fail silently too
        await cache.set("analytics:result:x", MagicMock())
