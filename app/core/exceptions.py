"""HTTP-aware exception hierarchy raised from the service layer."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base exception carrying an HTTP status and a client-safe detail."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal server error"

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None):
        super().__init__(
            status_code=self.status_code,
            detail=detail or self.default_detail,
            headers=headers,
        )


class BadRequestError(AppException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Bad request"


class NotFoundError(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ServiceUnavailableError(AppException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Service unavailable"
    retry_after_seconds: int = 5

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None):
        super().__init__(
            detail=detail,
            headers=headers or {"Retry-After": str(self.retry_after_seconds)},
        )


# --- Analytics request validation ---


class InvalidProjectIdError(BadRequestError):
    default_detail = "Invalid project ID"


class ProjectNotFoundError(NotFoundError):
    default_detail = "Project not found"


class InvalidRangeKeyError(BadRequestError):
    default_detail = "Invalid date range"


class InvalidTimezoneError(BadRequestError):
    default_detail = "Invalid timezone"


# --- Aggregation failures (retryable) ---


class QueryCollaboratorError(ServiceUnavailableError):
    """The event store failed or timed out while answering a query."""

    default_detail = "Analytics data is temporarily unavailable"


class PartialAggregationError(ServiceUnavailableError):
    """One aggregator in the fan-out failed; the whole request is aborted."""

    default_detail = "Failed to compute analytics"

    def __init__(self, aggregator: str, detail: str | None = None, **kwargs: Any):
        self.aggregator = aggregator
        super().__init__(detail or f"{self.default_detail} ({aggregator})", **kwargs)
