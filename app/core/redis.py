"""Redis client used by the analytics result cache."""

import logging

import redis.asyncio as redis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Connection pool settings
SOCKET_TIMEOUT = 5.0  # seconds
SOCKET_CONNECT_TIMEOUT = 5.0  # seconds
RETRY_ON_TIMEOUT = True
MAX_CONNECTIONS = 10

redis_client: redis.Redis | None = None
_connection_pool: ConnectionPool | None = None


async def get_redis() -> redis.Redis:
    """Get or create the module-level Redis client."""
    global redis_client, _connection_pool
    if redis_client is None:
        _connection_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=SOCKET_TIMEOUT,
            socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
            retry_on_timeout=RETRY_ON_TIMEOUT,
            max_connections=MAX_CONNECTIONS,
        )
        redis_client = redis.Redis(connection_pool=_connection_pool)
    return redis_client


async def get_redis_dep() -> redis.Redis:
    """FastAPI dependency returning the shared Redis client."""
    return await get_redis()


async def close_redis() -> None:
    """Close the module-level Redis connection and pool."""
    global redis_client, _connection_pool
    if redis_client:
        await redis_client.close()
        redis_client = None
    if _connection_pool:
        await _connection_pool.disconnect()
        _connection_pool = None


async def safe_redis_get(key: str, *, client: redis.Redis | None = None) -> str | None:
    """Read a key, treating Redis errors as a miss.

    Args:
        key: Redis key to read.
        client: Redis client to use. Falls back to ``get_redis()`` when *None*.

    Returns:
        The stored value, or None if the key is missing or Redis is unavailable.
    """
    try:
        r = client or await get_redis()
        value: str | None = await r.get(key)
        return value
    except RedisError as e:
        logger.warning(f"Redis GET failed for {key}: {e}")
        return None


async def safe_redis_setex(
    key: str,
    ttl: int,
    value: str,
    *,
    client: redis.Redis | None = None,
) -> bool:
    """Set key with expiration, with error handling.

    Args:
        key: Redis key to set.
        ttl: Time to live in seconds.
        value: Value to store.
        client: Redis client to use. Falls back to ``get_redis()`` when *None*.

    Returns:
        True if successful, False otherwise.
    """
    try:
        r = client or await get_redis()
        await r.setex(key, ttl, value)
        return True
    except RedisError as e:
        logger.warning(f"Redis SETEX failed for {key}: {e}")
        return False
