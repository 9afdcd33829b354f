import logging

from fastapi import APIRouter, Depends
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ServiceUnavailableError
from app.core.redis import get_redis_dep
from app.db.session import get_db
from app.schemas.common import MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=MessageResponse)
async def health_check():
    """Liveness check."""
    return {"message": "healthy"}


@router.get("/ready", response_model=MessageResponse)
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check - the event store must be reachable."""
    try:
        await db.execute(text("SELECT 1"))
        return {"message": "ready"}
    except Exception:
        logger.error("Readiness check failed: database connection error")
        raise ServiceUnavailableError(detail="Service not ready") from None


@router.get("/cache", response_model=MessageResponse)
async def cache_check(redis: Redis = Depends(get_redis_dep)):
    """Report whether the result cache is reachable; analytics still work without it."""
    try:
        await redis.ping()
    except (RedisError, OSError):
        logger.warning("Result cache unreachable")
        return {"message": "degraded"}
    return {"message": "ok"}
