"""
Worker-side jobs and lifecycle hooks.

The worker process owns the scanner (run by arq's cron scheduler) and the
digest consumers (started in ``startup``, drained in ``shutdown``).
Shared resources live in the arq ``ctx`` dict.
"""

import logging

from redis.asyncio import Redis

from app import __version__
from app.config import get_settings
from app.core.logging_config import setup_logging
from app.core.sentry_config import init_sentry
from app.db.database import dispose_engine, get_session_factory
from app.db.repositories import TaskSnapshotRepository
from app.events.bus import EventBus
from app.services.digest_consumer import DigestConsumer
from app.services.mail_transport import build_transport
from app.services.task_scanner import TaskScanner

logger = logging.getLogger(__name__)


async def scan_tasks_task(ctx: dict) -> dict:
    """
    Scheduled task: one scanner tick.

    Returns:
        Summary dict (tick id, counts, failed event ids).
    """
    scanner: TaskScanner = ctx["scanner"]
    # arq's job id is unique per cron run; reuse it as the tick id
    result = await scanner.run_tick(tick_id=ctx.get("job_id"))
    return result.to_dict()


async def startup(ctx: dict) -> None:
    """Worker startup: logging, Sentry, bus, scanner and digest consumers."""
    settings = get_settings()
    setup_logging(
        app_env=settings.app_env,
        log_level=settings.log_level,
        log_format=settings.log_format,
        process_role="worker",
    )
    init_sentry(
        dsn=settings.sentry_dsn,
        app_env=settings.app_env,
        app_version=__version__,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        with_web=False,
    )

    logger.info("[worker] Initializing shared resources...")
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    bus = EventBus.from_settings(redis, settings)

    ctx["bus_redis"] = redis
    ctx["scanner"] = TaskScanner(TaskSnapshotRepository(get_session_factory()), bus)
    consumer = DigestConsumer.from_settings(bus, build_transport(settings), redis, settings)
    await consumer.start()
    ctx["digest_consumer"] = consumer
    logger.info("[worker] Shared resources ready")


async def shutdown(ctx: dict) -> None:
    """Worker shutdown: drain consumers, then release connections."""
    logger.info("[worker] Cleaning up shared resources...")
    consumer: DigestConsumer | None = ctx.pop("digest_consumer", None)
    if consumer is not None:
        await consumer.stop()

    await dispose_engine()

    redis: Redis | None = ctx.pop("bus_redis", None)
    if redis is not None:
        await redis.aclose()
    logger.info("[worker] Cleanup complete")
