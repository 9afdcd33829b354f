from fastapi import Depends
from redis.asyncio import Redis

from app.core.cache import AnalyticsCache
from app.core.redis import get_redis_dep
from app.db.session import AsyncSessionLocal
from app.services.analytics_service import AnalyticsService
from app.services.event_store import EventStore, SQLEventStore


async def get_event_store() -> EventStore:
    """Dependency providing the read-only event store."""
    return SQLEventStore(AsyncSessionLocal)


async def get_analytics_service(
    store: EventStore = Depends(get_event_store),
) -> AnalyticsService:
    return AnalyticsService(store)


async def get_analytics_cache(
    redis: Redis = Depends(get_redis_dep),
) -> AnalyticsCache:
    return AnalyticsCache(redis)
