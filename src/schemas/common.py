"""Schemas shared by the health and error paths."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """Liveness probe response."""

    status: HealthStatus = Field(description="Current health status")
    timestamp: datetime = Field(default_factory=_utcnow, description="Check timestamp")
    version: str = Field(default="0.1.0", description="API version")


class CheckResult(BaseModel):
    """Result of a single dependency check."""

    name: str = Field(description="Name of the dependency being checked")
    healthy: bool = Field(description="Whether the dependency is healthy")
    latency_ms: float | None = Field(default=None, description="Response time in milliseconds")
    error: str | None = Field(default=None, description="Error message if unhealthy")


class ReadinessResponse(BaseModel):
    """Readiness probe response."""

    status: HealthStatus = Field(description="Overall readiness status")
    timestamp: datetime = Field(default_factory=_utcnow, description="Check timestamp")
    checks: list[CheckResult] = Field(default_factory=list, description="Individual check results")


class WorkersResponse(BaseModel):
    """In-process background state: order locks, notifications and latency."""

    orders_locked: int = Field(description="Orders with a mutation in flight")
    notifications_pending: int = Field(description="Notifications still being delivered")
    notifications_failed: int = Field(description="Notifications that exhausted their retries")
    latency: dict[str, dict[str, float]] = Field(
        default_factory=dict, description="Latency summary per normalized route"
    )


class ErrorDetail(BaseModel):
    """One entry of an error's details list.

    Validation errors carry a field location. Order errors carry structured
    context such as the current and requested status, or failed products.
    """

    loc: list[str | int] | None = Field(default=None, description="Location of error (e.g., field path)")
    msg: str = Field(description="Human-readable error message")
    type: str = Field(description="Error type identifier")
    context: dict[str, Any] | None = Field(default=None, description="Structured error context")


class ErrorResponse(BaseModel):
    """Body returned for every API error."""

    error: str = Field(description="Error type or category")
    message: str = Field(description="Human-readable error description")
    details: list[ErrorDetail] | None = Field(default=None, description="Additional error details")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=_utcnow, description="Error timestamp")

    @classmethod
    def from_exception(
        cls,
        error_type: str,
        message: str,
        details: list[dict[str, Any]] | None = None,
        request_id: str | None = None,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from exception details.

        Keys other than ``loc``, ``msg`` and ``type`` are kept under ``context``.

        Args:
            error_type: Category or type of error.
            message: Human-readable error description.
            details: Optional list of error detail dictionaries.
            request_id: Optional request ID for tracing.

        Returns:
            ErrorResponse: Formatted error response.
        """
        error_details = None
        if details:
            error_details = []
            for d in details:
                extra = {k: v for k, v in d.items() if k not in ("loc", "msg", "type", "input", "ctx", "url")}
                error_details.append(
                    ErrorDetail(
                        loc=d.get("loc"),
                        msg=d.get("msg", error_type),
                        type=d.get("type", "error"),
                        context=extra or None,
                    )
                )

        return cls(
            error=error_type,
            message=message,
            details=error_details,
            request_id=request_id,
        )
