"""
Global exception handlers for the FastAPI application.

Catches:
1. TaskPulseError subclasses — maps to appropriate HTTP status codes.
   Rate-limit errors carry ``Retry-After`` and ``X-RateLimit-*`` headers.
2. Unhandled Exception — 500 Internal Server Error with a unique
   ``error_id`` for support correlation.

HTTPException is NOT handled here — FastAPI's built-in handler deals
with those, and Sentry's ``before_send`` filter drops 4xx events.
"""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.exceptions import (
    EventBusError,
    MailDeliveryError,
    RateLimiterUnavailableError,
    RateLimitExceededError,
    SessionAuthError,
    SnapshotReadError,
    TaskPulseError,
)
from app.middleware.rate_limiter import retry_after_header

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register global exception handlers on the FastAPI app.

    Called from ``create_app()`` after all middleware and routers
    are registered.
    """

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limited(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Admission denial: 429 with a retry hint. Logged by the limiter already."""
        headers = {"Retry-After": retry_after_header(exc.retry_after)}
        if "limit" in exc.details:
            headers["X-RateLimit-Limit"] = str(exc.details["limit"])
            headers["X-RateLimit-Remaining"] = str(exc.details.get("remaining", 0))
        return JSONResponse(
            status_code=429,
            content={
                "detail": exc.message,
                "error_type": type(exc).__name__,
                "operation": exc.operation,
                "retry_after": round(exc.retry_after, 3),
            },
            headers=headers,
        )

    @app.exception_handler(RateLimiterUnavailableError)
    async def handle_limiter_unavailable(
        request: Request, exc: RateLimiterUnavailableError
    ) -> JSONResponse:
        """Fail-closed limiter: 503 so clients retry and operators see infrastructure, not abuse."""
        return JSONResponse(
            status_code=503,
            content={"detail": exc.message, "error_type": type(exc).__name__},
            headers={"Retry-After": retry_after_header(exc.retry_after)},
        )

    @app.exception_handler(TaskPulseError)
    async def handle_taskpulse_error(request: Request, exc: TaskPulseError) -> JSONResponse:
        """Map TaskPulseError subclasses to HTTP status codes."""
        status_code = _get_status_code(exc)
        logger.error(
            f"{type(exc).__name__}: {exc.message}",
            exc_info=exc,
            extra={"error_type": type(exc).__name__, "path": request.url.path},
        )
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "error_type": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def handle_unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions: log, return 500 with error_id."""
        error_id = uuid.uuid4().hex[:8]
        logger.exception(
            f"Unhandled exception (error_id={error_id})",
            extra={"error_id": error_id, "path": request.url.path},
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error_id": error_id,
            },
        )


def _get_status_code(exc: TaskPulseError) -> int:
    """Map exception type to HTTP status code."""
    if isinstance(exc, RateLimitExceededError):
        return 429
    if isinstance(exc, RateLimiterUnavailableError):
        return 503
    if isinstance(exc, SessionAuthError):
        return 401
    if isinstance(exc, (EventBusError, MailDeliveryError)):
        return 502
    if isinstance(exc, SnapshotReadError):
        return 503
    return 500
