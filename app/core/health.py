"""
Health check with dependency probes.

Checks:
- Application: always up if responding
- Redis: ``PING`` (rate limiter buckets, event bus, notice channel)
- Dispatcher: whether the live notification loop is running
- Live sessions: count of sessions held by this instance

Returns 200 with ``"healthy"`` or ``"degraded"`` status — never 503.
Load balancers check for 200; the body indicates component health.
"""

import logging
import time
from datetime import UTC, datetime

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


async def check_redis(redis: Redis) -> dict:
    """
    Probe Redis connectivity.

    Returns:
        ``{"status": "up", "latency_ms": float}`` or
        ``{"status": "down", "error": str}``
    """
    try:
        start = time.monotonic()
        await redis.ping()
        latency = round((time.monotonic() - start) * 1000, 1)
        return {"status": "up", "latency_ms": latency}
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "down", "error": str(e)}


async def get_health_status(
    app_name: str,
    app_version: str,
    app_env: str,
    redis_client: Redis | None = None,
    live_sessions: int | None = None,
    dispatcher_running: bool | None = None,
) -> dict:
    """
    Build complete health status response.

    Overall status is ``"healthy"`` if all configured probes pass,
    ``"degraded"`` if any fail.
    """
    components: dict[str, dict] = {}

    if redis_client is not None:
        components["redis"] = await check_redis(redis_client)

    if dispatcher_running is not None:
        components["dispatcher"] = {"status": "up" if dispatcher_running else "down"}

    all_up = all(c["status"] == "up" for c in components.values())
    overall = "healthy" if (not components or all_up) else "degraded"

    body = {
        "status": overall,
        "app": app_name,
        "version": app_version,
        "environment": app_env,
        "timestamp": datetime.now(UTC).isoformat(),
        "components": components,
    }
    if live_sessions is not None:
        body["live_sessions"] = live_sessions
    return body
