import logging
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_router
from app.core.config import settings, setup_logging
from app.core.limiter import limiter
from app.core.redis import close_redis
from app.db.session import engine

logger = logging.getLogger(__name__)

# Analytics requests slower than this are logged
SLOW_REQUEST_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info(
        "%s %s starting (default range %s, timeout %.0fs, cache ttl %ss)",
        settings.PROJECT_NAME,
        settings.VERSION,
        settings.DEFAULT_DATE_RANGE,
        settings.ANALYTICS_TIMEOUT_SECONDS,
        settings.ANALYTICS_CACHE_TTL_SECONDS,
    )
    yield
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Comparative, time-bucketed analytics over tracked page views and events.",
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]


@app.middleware("http")
async def time_requests(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Expose server time per request and log slow analytics queries."""
    started = time.perf_counter()
    response: Response = await call_next(request)
    elapsed = time.perf_counter() - started
    response.headers["Server-Timing"] = f"app;dur={elapsed * 1000:.1f}"
    if elapsed > SLOW_REQUEST_SECONDS and "/analytics/" in request.url.path:
        logger.warning(
            "Slow analytics request %s %s took %.2fs (status %d)",
            request.method,
            request.url.path,
            elapsed,
            response.status_code,
        )
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """Add security headers to all responses."""
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if not settings.DEBUG:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": f"{settings.PROJECT_NAME} is running", "version": settings.VERSION}
