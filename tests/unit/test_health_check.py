"""Tests for app.core.health — Redis probe and dispatcher status."""

from unittest.mock import AsyncMock

from app.core.health import check_redis, get_health_status


class TestCheckRedis:
    """Verify Redis connectivity probe."""

    async def test_returns_up_on_success(self):
        redis = AsyncMock()
        redis.ping = AsyncMock(return_value=True)
        result = await check_redis(redis)
        assert result["status"] == "up"
        assert result["latency_ms"] >= 0

    async def test_returns_down_on_failure(self):
        redis = AsyncMock()
        redis.ping = AsyncMock(side_effect=ConnectionError("redis unavailable"))
        result = await check_redis(redis)
        assert result["status"] == "down"
        assert "redis unavailable" in result["error"]


class TestGetHealthStatus:
    """Verify overall health status aggregation."""

    async def test_healthy_when_redis_up(self):
        redis = AsyncMock()
        redis.ping = AsyncMock(return_value=True)

        result = await get_health_status(
            app_name="TaskPulse",
            app_version="0.3.0",
            app_env="development",
            redis_client=redis,
            live_sessions=3,
        )

        assert result["status"] == "healthy"
        assert result["app"] == "TaskPulse"
        assert result["components"]["redis"]["status"] == "up"
        assert result["live_sessions"] == 3
        assert "timestamp" in result

    async def test_degraded_when_redis_down(self):
        redis = AsyncMock()
        redis.ping = AsyncMock(side_effect=ConnectionError("refused"))

        result = await get_health_status(
            app_name="TaskPulse",
            app_version="0.3.0",
            app_env="production",
            redis_client=redis,
        )

        assert result["status"] == "degraded"
        assert result["components"]["redis"]["status"] == "down"
        assert "live_sessions" not in result

    async def test_healthy_without_probes(self):
        result = await get_health_status(app_name="TaskPulse", app_version="0.3.0", app_env="development")
        assert result["status"] == "healthy"
        assert result["components"] == {}

    async def test_stopped_dispatcher_degrades(self):
        result = await get_health_status(
            app_name="TaskPulse",
            app_version="0.3.0",
            app_env="production",
            dispatcher_running=False,
        )
        assert result["status"] == "degraded"
        assert result["components"]["dispatcher"] == {"status": "down"}
