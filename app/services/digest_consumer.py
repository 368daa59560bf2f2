"""
Digest consumer.

Reads report events from the three report topics and emails each one as
a digest. One consumer group per topic (``digest-{topic}``) and one
asyncio task per (topic, partition), so a user's reports are mailed in
the order the scanner published them.

Processing of one event:
    1. Decode the payload into a DigestDocument. Malformed payloads go
       straight to the dead-letter stream.
    2. Skip events whose ``digest:sent:{event_id}`` marker exists; the
       bus is at-least-once, so redeliveries are expected.
    3. Hand the document to the mail transport, retrying with backoff up
       to ``digest_max_attempts``. Exhaustion dead-letters the event.
    4. Ack. Every outcome above ends in an ack, so one bad event never
       stalls the partition.
"""

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import Settings
from app.core.exceptions import ConsumeError, MailDeliveryError, MalformedEventError
from app.core.interfaces import IMailTransport
from app.core.models import DigestDocument, Event, TaskSnapshot
from app.core.resilience import call_with_retry, compute_backoff
from app.events.bus import EventBus
from app.events.topics import REPORT_TOPICS, report_kind_for

logger = logging.getLogger(__name__)

SENT_MARKER_PREFIX = "digest:sent:"


class DigestOutcome(StrEnum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"  # No recipient address for the user
    DEAD_LETTERED = "dead_lettered"


def group_for(topic: str) -> str:
    return f"digest-{topic}"


def map_event_to_digest(event: Event) -> DigestDocument | None:
    """
    Build the digest for a report event.

    Returns:
        The document, or None if the payload carries no recipient address.

    Raises:
        MalformedEventError: If the payload does not describe a report.
    """
    payload = event.payload
    try:
        report_kind = payload.get("report_kind") or report_kind_for(event.topic)
        tasks = [TaskSnapshot.model_validate(t) for t in payload.get("tasks", [])]
        recipient = str(payload.get("recipient") or "").strip()
        if not recipient:
            return None
        generated_at = payload.get("generated_at")
        return DigestDocument(
            recipient_address=recipient,
            report_kind=report_kind,
            tasks=tasks,
            generated_at=datetime.fromisoformat(generated_at) if generated_at else event.timestamp,
            source_event_id=event.event_id,
        )
    except (ValidationError, KeyError, ValueError, TypeError, AttributeError) as e:
        raise MalformedEventError(f"Event {event.event_id} is not a report: {e}") from e


class DigestConsumer:
    """
    Long-running consumer, started and stopped by the worker lifecycle hooks.

    Usage:
        consumer = DigestConsumer.from_settings(bus, transport, redis, settings)
        await consumer.start()
        ...
        await consumer.stop()  # finishes and acks in-flight events
    """

    def __init__(
        self,
        bus: EventBus,
        transport: IMailTransport,
        redis: Redis,
        consumer_name: str = "digest-worker",
        topics: Iterable[str] | None = None,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        dedupe_ttl_seconds: int = 7 * 24 * 3600,
        worker_index: int = 0,
        worker_count: int = 1,
    ):
        self._bus = bus
        self._transport = transport
        self._redis = redis
        self._consumer_name = consumer_name
        self._topics = list(topics) if topics is not None else [t.value for t in REPORT_TOPICS.values()]
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._dedupe_ttl = dedupe_ttl_seconds
        self._worker_index = worker_index
        self._worker_count = max(worker_count, 1)
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.stats: dict[str, int] = {outcome.value: 0 for outcome in DigestOutcome}

    @classmethod
    def from_settings(
        cls,
        bus: EventBus,
        transport: IMailTransport,
        redis: Redis,
        settings: Settings,
    ) -> "DigestConsumer":
        return cls(
            bus=bus,
            transport=transport,
            redis=redis,
            consumer_name=f"{settings.digest_consumer_name}-{settings.digest_worker_index}",
            max_attempts=settings.digest_max_attempts,
            retry_base_delay=settings.digest_retry_base_delay,
            dedupe_ttl_seconds=settings.digest_dedupe_ttl_seconds,
            worker_index=settings.digest_worker_index,
            worker_count=settings.digest_worker_count,
        )

    def owned_partitions(self) -> list[int]:
        return [
            p for p in range(self._bus.partitions)
            if p % self._worker_count == self._worker_index
        ]

    # ─── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        self._stop.clear()
        partitions = self.owned_partitions()
        for topic in self._topics:
            for partition in partitions:
                self._tasks.append(
                    asyncio.create_task(
                        self._run_partition(topic, partition),
                        name=f"digest:{topic}:{partition}",
                    )
                )
        logger.info(
            f"[digest] Consumer '{self._consumer_name}' started on "
            f"{len(self._topics)} topics, partitions {partitions}"
        )

    async def stop(self) -> None:
        """Stop reading and wait for in-flight events to be processed and acked."""
        self._stop.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"[digest] Consumer '{self._consumer_name}' stopped ({self.stats})")

    async def _run_partition(self, topic: str, partition: int) -> None:
        group = group_for(topic)
        failures = 0
        while not self._stop.is_set():
            try:
                async for event in self._bus.subscribe(
                    topic, group, self._consumer_name, partition, stop=self._stop
                ):
                    await self.process(event, group)
                    failures = 0
            except (ConsumeError, RedisError, OSError) as e:
                delay = compute_backoff(failures, base_delay=1.0, max_delay=30.0)
                failures += 1
                logger.error(
                    f"[digest] Subscription to {topic}:{partition} failed ({e}); "
                    f"resubscribing in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    # ─── Per-event processing ────────────────────────────────

    async def process(self, event: Event, group: str) -> DigestOutcome | None:
        """
        Handle one event and ack it.

        Returns None (and leaves the event un-acked for redelivery) only when
        the dead-letter write itself failed.
        """
        try:
            outcome = await self.handle_event(event, group)
        except ConsumeError as e:
            logger.error(f"[digest] Event {event.event_id} left pending: {e.message}")
            return None
        except Exception as e:
            logger.exception(f"[digest] Unexpected failure on event {event.event_id}")
            try:
                await self._bus.dead_letter(event, group, error=repr(e))
            except ConsumeError as dl_error:
                logger.error(f"[digest] Event {event.event_id} left pending: {dl_error.message}")
                return None
            outcome = DigestOutcome.DEAD_LETTERED

        self.stats[outcome.value] += 1
        try:
            await self._bus.ack(event, group)
        except ConsumeError as e:
            # Redelivered later; the sent marker keeps it from being mailed twice
            logger.error(f"[digest] Ack of {event.event_id} failed: {e.message}")
        return outcome

    async def handle_event(self, event: Event, group: str) -> DigestOutcome:
        """
        Decode, dedupe and deliver one event. Does not ack.

        Raises:
            ConsumeError: If the event had to be dead-lettered and the
                dead-letter write failed.
        """
        try:
            document = map_event_to_digest(event)
        except MalformedEventError as e:
            await self._bus.dead_letter(event, group, error=e.message)
            return DigestOutcome.DEAD_LETTERED

        if document is None:
            logger.warning(
                f"[digest] No recipient for user {event.key}; event {event.event_id} skipped"
            )
            return DigestOutcome.SKIPPED

        if await self._already_sent(event.event_id):
            logger.info(f"[digest] Event {event.event_id} already mailed; skipping redelivery")
            return DigestOutcome.DUPLICATE

        try:
            await call_with_retry(
                lambda: self._transport.deliver(document),
                max_attempts=self._max_attempts,
                base_delay=self._retry_base_delay,
                retryable_exceptions=(MailDeliveryError,),
                operation_name=f"digest {event.event_id}",
            )
        except MailDeliveryError as e:
            logger.error(
                f"[digest] Giving up on event {event.event_id} for user {event.key} "
                f"after {self._max_attempts} attempts"
            )
            await self._bus.dead_letter(event, group, error=e.message, attempts=self._max_attempts)
            return DigestOutcome.DEAD_LETTERED

        await self._mark_sent(event.event_id)
        return DigestOutcome.DELIVERED

    async def _already_sent(self, event_id: str) -> bool:
        try:
            return bool(await self._redis.exists(f"{SENT_MARKER_PREFIX}{event_id}"))
        except (RedisError, ConnectionError, OSError) as e:
            # Cannot tell; deliver anyway (at-least-once)
            logger.warning(f"[digest] Sent-marker lookup for {event_id} failed: {e}")
            return False

    async def _mark_sent(self, event_id: str) -> None:
        try:
            await self._redis.set(
                f"{SENT_MARKER_PREFIX}{event_id}", "1", nx=True, ex=self._dedupe_ttl
            )
        except (RedisError, ConnectionError, OSError) as e:
            logger.warning(f"[digest] Could not record sent marker for {event_id}: {e}")
