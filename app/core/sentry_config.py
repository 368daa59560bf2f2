"""
Sentry error tracking configuration for TaskPulse.

Initialized by the API (FastAPI/Starlette integrations) and by the arq
worker (asyncio integration only). Filters out expected 4xx
HTTPExceptions and rate-limit denials to reduce noise.

When ``dsn`` is empty (the default), Sentry is completely disabled.
"""

import logging

import sentry_sdk
from fastapi import HTTPException
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from app.config import AppEnv
from app.core.exceptions import RateLimitExceededError, TaskPulseError


def init_sentry(
    dsn: str,
    app_env: AppEnv,
    app_version: str,
    traces_sample_rate: float = 0.1,
    profiles_sample_rate: float = 0.1,
    with_web: bool = True,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN. Empty string disables Sentry entirely.
        app_env: Current environment (used as Sentry ``environment``).
        app_version: Application version (used as Sentry ``release``).
        traces_sample_rate: Fraction of transactions to trace (0.0–1.0).
        profiles_sample_rate: Fraction of transactions to profile (0.0–1.0).
        with_web: Attach the FastAPI/Starlette integrations (False in the worker).

    Returns:
        True if Sentry was initialized.
    """
    if not dsn:
        return False

    integrations = [
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    if with_web:
        integrations += [
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
        ]

    sentry_sdk.init(
        dsn=dsn,
        environment=app_env.value,
        release=f"taskpulse@{app_version}",
        traces_sample_rate=traces_sample_rate,
        profiles_sample_rate=profiles_sample_rate,
        integrations=integrations,
        before_send=_filter_events,
        send_default_pii=False,
    )
    return True


def _filter_events(event: dict, hint: dict) -> dict | None:
    """
    Filter Sentry events before sending.

    - Drops 4xx HTTPException events and ordinary rate-limit denials.
    - Tags TaskPulseError subclasses with their type and details.
    """
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]

        if isinstance(exc_value, HTTPException) and exc_value.status_code < 500:
            return None

        if isinstance(exc_value, RateLimitExceededError):
            return None

        if isinstance(exc_value, TaskPulseError):
            event.setdefault("tags", {})
            event["tags"]["error_type"] = type(exc_value).__name__
            if exc_value.details:
                event["extra"] = {**event.get("extra", {}), **exc_value.details}

    return event
