"""
Live task-change notifications.

Task mutations in the request path call TaskChangeNotifier, which hands a
TaskChangeNotice to the ``task-changed`` channel and returns immediately.
NotificationDispatcher drains the channel in a background task and fans
each notice out to every live session of the owning user.

Delivery is best-effort: a notice for a user with no live session is
dropped, and a full channel drops new notices rather than blocking a
request. Durable history is the email digest's job.

Channel backends:
    - memory: in-process asyncio.Queue (single API instance, tests).
    - redis: Redis pub/sub on ``task-changed``; every API instance
      subscribes, so a notice raised anywhere reaches sessions held by
      any instance.
"""

import asyncio
import logging
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import NoticeChannelBackend, Settings
from app.core.interfaces import INoticeChannel
from app.core.models import TaskAction, TaskChangeNotice
from app.core.resilience import compute_backoff
from app.events.topics import Topic
from app.services.ws_manager import (
    ConnectionRegistry,
    WSEvent,
    WSEventType,
    user_destination,
)

logger = logging.getLogger(__name__)


# ─── Channels ────────────────────────────────────────────────


class InMemoryNoticeChannel(INoticeChannel):
    """Bounded in-process queue."""

    def __init__(self, maxsize: int = 10_000):
        self._queue: asyncio.Queue[TaskChangeNotice] = asyncio.Queue(maxsize=maxsize)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def publish(self, notice: TaskChangeNotice) -> bool:
        try:
            self._queue.put_nowait(notice)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"Notice channel full, dropping {notice.action} notice for user {notice.user_id}"
            )
            return False

    async def get(self) -> TaskChangeNotice:
        return await self._queue.get()


class RedisNoticeChannel(INoticeChannel):
    """
    Redis pub/sub relay.

    ``publish`` only enqueues into a local outbox; a background task does
    the network write so the request path never waits on Redis. A second
    task subscribes to the channel and feeds the inbox read by ``get``.
    """

    def __init__(self, redis: Redis, channel: str = Topic.TASK_CHANGED.value, maxsize: int = 10_000):
        self._redis = redis
        self._channel = channel
        self._outbox: asyncio.Queue[TaskChangeNotice] = asyncio.Queue(maxsize=maxsize)
        self._inbox: asyncio.Queue[TaskChangeNotice] = asyncio.Queue(maxsize=maxsize)
        self._tasks: list[asyncio.Task] = []

    def publish(self, notice: TaskChangeNotice) -> bool:
        try:
            self._outbox.put_nowait(notice)
            return True
        except asyncio.QueueFull:
            logger.warning(
                f"Notice outbox full, dropping {notice.action} notice for user {notice.user_id}"
            )
            return False

    async def get(self) -> TaskChangeNotice:
        return await self._inbox.get()

    async def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._pump_out(), name="notice-outbox"),
            asyncio.create_task(self._pump_in(), name="notice-inbox"),
        ]
        logger.info(f"Relaying task-change notices over Redis channel '{self._channel}'")

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _pump_out(self) -> None:
        while True:
            notice = await self._outbox.get()
            try:
                await self._redis.publish(self._channel, notice.model_dump_json())
            except (RedisError, ConnectionError, OSError) as e:
                # Best-effort: a notice lost here is not retried
                logger.warning(f"Failed to relay notice for user {notice.user_id}: {e}")

    async def _pump_in(self) -> None:
        failures = 0
        while True:
            pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(self._channel)
                failures = 0
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    self._accept(message.get("data"))
            except (RedisError, ConnectionError, OSError) as e:
                delay = compute_backoff(failures, base_delay=0.5, max_delay=15.0)
                failures += 1
                logger.error(f"Notice subscription lost ({e}); resubscribing in {delay:.1f}s")
                await asyncio.sleep(delay)
            finally:
                await pubsub.aclose()

    def _accept(self, data: Any) -> None:
        try:
            notice = TaskChangeNotice.model_validate_json(data)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed task-change notice: {e}")
            return
        try:
            self._inbox.put_nowait(notice)
        except asyncio.QueueFull:
            logger.warning(f"Notice inbox full, dropping notice for user {notice.user_id}")


def build_notice_channel(settings: Settings, redis: Redis | None = None) -> INoticeChannel:
    """Channel for the configured backend."""
    if settings.notice_channel_backend == NoticeChannelBackend.REDIS:
        if redis is None:
            raise ValueError("Redis notice channel requires a Redis client")
        return RedisNoticeChannel(redis, maxsize=settings.notice_queue_size)
    return InMemoryNoticeChannel(maxsize=settings.notice_queue_size)


# ─── Request-path API ────────────────────────────────────────


class TaskChangeNotifier:
    """
    Raises change notices from task mutation handlers. Never blocks.

    Usage (in a CRUD route):
        task = await repo.update(task_id, **changes)
        notifier.task_updated(user_id, task.to_dict(), previous=old.to_dict())
    """

    def __init__(self, channel: INoticeChannel):
        self._channel = channel

    def raise_notice(self, notice: TaskChangeNotice) -> bool:
        return self._channel.publish(notice)

    def task_created(self, user_id: str, task: dict) -> bool:
        return self.raise_notice(
            TaskChangeNotice(user_id=str(user_id), action=TaskAction.CREATED, task=task)
        )

    def task_updated(self, user_id: str, task: dict, previous: dict | None = None) -> bool:
        return self.raise_notice(
            TaskChangeNotice(
                user_id=str(user_id),
                action=TaskAction.UPDATED,
                task=task,
                previous=previous,
            )
        )

    def task_deleted(self, user_id: str, previous: dict) -> bool:
        return self.raise_notice(
            TaskChangeNotice(user_id=str(user_id), action=TaskAction.DELETED, previous=previous)
        )


# ─── Dispatcher ──────────────────────────────────────────────


class NotificationDispatcher:
    """
    Background fan-out from the notice channel to the connection registry.

    Also runs a reaper that force-closes sessions whose credential
    lifetime has passed, even if no notice is ever sent to them.
    """

    def __init__(
        self,
        channel: INoticeChannel,
        registry: ConnectionRegistry,
        reap_interval: float = 30.0,
    ):
        self.channel = channel
        self.registry = registry
        self._reap_interval = reap_interval
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        await self.channel.start()
        self._tasks = [
            asyncio.create_task(self._run(), name="notification-dispatcher"),
            asyncio.create_task(self._reap(), name="session-reaper"),
        ]
        logger.info("Notification dispatcher started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.channel.close()
        logger.info("Notification dispatcher stopped")

    async def dispatch(self, notice: TaskChangeNotice) -> int:
        """
        Push one notice to every live session of its user.

        Returns:
            Number of sessions that received it (0 when none are live).
        """
        if self.registry.get_connection_count(notice.user_id) == 0:
            logger.debug(f"No live session for user {notice.user_id}; notice dropped")
            return 0

        event = WSEvent(
            event=WSEventType.TASK_CHANGED,
            data={
                "action": notice.action.value,
                "task_id": notice.task_id,
                "task": notice.task,
                "previous": notice.previous,
                "raised_at": notice.raised_at.isoformat(),
            },
            destination=user_destination(notice.user_id),
        )
        delivered = await self.registry.send_to_user(notice.user_id, event)
        logger.debug(
            f"Task {notice.task_id} {notice.action} delivered to "
            f"{delivered} session(s) of user {notice.user_id}"
        )
        return delivered

    async def _run(self) -> None:
        while True:
            notice = await self.channel.get()
            try:
                await self.dispatch(notice)
            except Exception:
                logger.exception(f"Dispatch failed for user {notice.user_id}")

    async def _reap(self) -> None:
        while True:
            await asyncio.sleep(self._reap_interval)
            try:
                closed = await self.registry.close_expired()
                if closed:
                    logger.info(f"Closed {closed} expired session(s)")
            except Exception:
                logger.exception("Session reaper pass failed")


# ─── Module-level wiring ─────────────────────────────────────

_dispatcher: NotificationDispatcher | None = None


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    """Install the process-wide dispatcher (called from the app lifespan)."""
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher() -> NotificationDispatcher:
    if _dispatcher is None:
        raise RuntimeError("Notification dispatcher has not been started")
    return _dispatcher


def get_task_notifier() -> TaskChangeNotifier:
    """
    FastAPI dependency for task mutation routes.

    Usage:
        @router.patch("/tasks/{task_id}")
        async def update_task(..., notifier: TaskChangeNotifier = Depends(get_task_notifier)):
            ...
    """
    return TaskChangeNotifier(get_dispatcher().channel)
