"""
arq worker configuration.

Run with:
    arq app.tasks.task_queue.WorkerSettings
"""

import logging

from arq import cron
from arq.connections import RedisSettings

from app.config import get_settings
from app.tasks.scan_tasks import scan_tasks_task, shutdown, startup

logger = logging.getLogger(__name__)


def get_redis_settings() -> RedisSettings:
    """Parse the Redis URL (redis:// or rediss://, with password and db) into arq RedisSettings."""
    return RedisSettings.from_dsn(get_settings().redis_url)


def scan_minutes(interval_minutes: int) -> set[int]:
    """Minutes of the hour at which the scanner fires, starting at :00."""
    return set(range(0, 60, interval_minutes))


class WorkerSettings:
    """arq worker configuration: the scanner cron job and the digest consumer hooks."""

    redis_settings = get_redis_settings()
    max_jobs = 10
    job_timeout = 300  # 5 minutes max per scan

    functions = [scan_tasks_task]

    cron_jobs = [
        cron(
            scan_tasks_task,
            minute=scan_minutes(get_settings().scanner_interval_minutes),
            second=0,
            unique=True,
            run_at_startup=get_settings().scanner_run_at_startup,
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown
