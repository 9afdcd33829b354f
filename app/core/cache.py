"""Short-lived Redis cache for computed analytics payloads.

The engine itself is stateless; this cache sits in front of it at the API
layer. Entries are immutable JSON snapshots, so concurrent requests never
share mutable state.
"""

import hashlib
import json
import logging

from redis.asyncio import Redis

from app.core.config import settings
from app.core.redis import safe_redis_get, safe_redis_setex
from app.schemas.analytics import AnalyticsResponse, DimensionFilters
from app.services.date_ranges import BUCKETING_VERSION

logger = logging.getLogger(__name__)

CACHE_PREFIX = "analytics:result:"


def analytics_cache_key(
    project_id: int | str,
    date_range: str,
    timezone: str,
    filters: DimensionFilters | None,
) -> str:
    """Build the cache key for one analytics request."""
    dims = filters.model_dump() if filters else {}
    payload = json.dumps(
        {k: sorted(v) for k, v in dims.items() if v},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    dims_hash = hashlib.sha256(payload).hexdigest()[:32]
    return (
        f"{CACHE_PREFIX}v{BUCKETING_VERSION}:{project_id}:{date_range}:{timezone}:{dims_hash}"
    )


class AnalyticsCache:
    """Read-through helper around Redis; failures degrade to a cache miss."""

    def __init__(self, redis: Redis | None, ttl_seconds: int | None = None):
        self.redis = redis
        self.ttl_seconds = settings.ANALYTICS_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None and self.ttl_seconds > 0

    async def get(self, key: str) -> AnalyticsResponse | None:
        if not self.enabled:
            return None
        raw = await safe_redis_get(key, client=self.redis)
        if raw is None:
            return None
        try:
            return AnalyticsResponse.model_validate_json(raw)
        except ValueError:
            logger.warning("Discarding unreadable cache entry %s", key)
            return None

    async def set(self, key: str, result: AnalyticsResponse) -> None:
        if not self.enabled:
            return
        await safe_redis_setex(
            key,
            self.ttl_seconds,
            result.model_dump_json(by_alias=True),
            client=self.redis,
        )
