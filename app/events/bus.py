"""
Event bus client on Redis Streams.

Contract:
- publish(topic, key, payload) appends to the key's partition stream and
  returns once Redis has acknowledged the write. Transient failures are
  retried with bounded backoff, then surface as PublishError.
- subscribe(topic, group, consumer, partition) is a lazy async sequence of
  Events. Each consumer group has its own durable cursor per stream.
- ack(event, group) advances the cursor. Callers ack only after local
  processing succeeded, so delivery is at-least-once: a crash between
  processing and ack redelivers the event on restart.

Ordering: one stream per (topic, partition), and a key always maps to the
same partition, so events for one key are read in publish order. There is
no ordering across partitions.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from app.config import Settings
from app.core.exceptions import ConsumeError, MalformedEventError, PublishError
from app.core.models import Event
from app.core.resilience import call_with_retry, compute_backoff
from app.events.topics import dead_letter_stream, partition_for, stream_name

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (RedisError, ConnectionError, TimeoutError, OSError)


class EventBus:
    """
    Topic-partitioned publish/subscribe over Redis Streams.

    Usage:
        bus = EventBus.from_settings(redis, settings)
        await bus.publish(Topic.UNFINISHED_TASKS_REPORT, user_id, payload)

        async for event in bus.subscribe(topic, "digest", "worker-1", partition=0):
            await handle(event)
            await bus.ack(event, "digest")
    """

    def __init__(
        self,
        redis: Redis,
        partitions: int = 4,
        maxlen: int = 100_000,
        publish_max_retries: int = 3,
        publish_base_delay: float = 0.5,
        block_ms: int = 1000,
        read_count: int = 10,
    ):
        self._redis = redis
        self.partitions = partitions
        self._maxlen = maxlen
        self._publish_max_retries = publish_max_retries
        self._publish_base_delay = publish_base_delay
        self._block_ms = block_ms
        self._read_count = read_count

    @classmethod
    def from_settings(cls, redis: Redis, settings: Settings) -> "EventBus":
        return cls(
            redis=redis,
            partitions=settings.bus_partitions,
            maxlen=settings.bus_stream_maxlen,
            publish_max_retries=settings.bus_publish_max_retries,
            publish_base_delay=settings.bus_publish_base_delay,
            block_ms=settings.bus_block_ms,
            read_count=settings.bus_read_count,
        )

    # ─── Publish ─────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        key: str,
        payload: dict,
        event_id: str | None = None,
    ) -> Event:
        """
        Append an event to ``topic``, partitioned by ``key``.

        Returns:
            The published Event with ``message_id`` and ``partition`` set.

        Raises:
            PublishError: If Redis did not accept the write after retries.
        """
        fields = {"topic": str(topic), "key": key, "payload": payload}
        if event_id:
            fields["event_id"] = event_id
        return await self.publish_event(Event(**fields))

    async def publish_event(self, event: Event) -> Event:
        """Publish a pre-built Event (keeps its event_id and timestamp)."""
        partition = partition_for(event.key, self.partitions)
        stream = stream_name(event.topic, partition)
        entry = event.to_fields()

        try:
            message_id = await call_with_retry(
                lambda: self._redis.xadd(stream, entry, maxlen=self._maxlen, approximate=True),
                max_attempts=self._publish_max_retries + 1,
                base_delay=self._publish_base_delay,
                retryable_exceptions=_TRANSIENT_ERRORS,
                operation_name=f"publish {event.topic}",
            )
        except _TRANSIENT_ERRORS as e:
            raise PublishError(
                f"Failed to publish event {event.event_id} to '{stream}': {e}",
                details={"event_id": event.event_id, "topic": event.topic, "key": event.key},
            ) from e

        logger.debug(
            f"Published event {event.event_id} to '{stream}' (Redis ID: {message_id})"
        )
        return event.model_copy(update={"message_id": message_id, "partition": partition})

    # ─── Consume ─────────────────────────────────────────────

    async def ensure_group(self, topic: str, group: str, partition: int) -> bool:
        """
        Create the consumer group on a partition stream if missing.

        New groups start at the beginning of the stream so nothing published
        before the first consumer started is lost.

        Returns:
            True if the group was created, False if it already existed.
        """
        stream = stream_name(topic, partition)
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info(f"Created consumer group '{group}' on '{stream}'")
            return True
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                return False
            raise ConsumeError(f"Failed to create group '{group}' on '{stream}': {e}") from e
        except _TRANSIENT_ERRORS as e:
            raise ConsumeError(f"Failed to create group '{group}' on '{stream}': {e}") from e

    async def subscribe(
        self,
        topic: str,
        group: str,
        consumer: str,
        partition: int,
        stop: asyncio.Event | None = None,
    ) -> AsyncIterator[Event]:
        """
        Lazily yield events for ``group`` from one partition of ``topic``.

        First replays this consumer's pending entries (delivered before a
        restart but never acked), then waits for new entries. Returns when
        ``stop`` is set; the check happens between reads, so at most
        ``block_ms`` passes before the generator notices.

        Read failures are logged and retried with backoff; they never end
        the sequence.
        """
        stop = stop or asyncio.Event()
        stream = stream_name(topic, partition)
        await self.ensure_group(topic, group, partition)

        # Phase 1: pending entries owned by this consumer, oldest first
        cursor = "0"
        while not stop.is_set():
            entries = await self._read(group, consumer, stream, cursor, block=None)
            if not entries:
                break
            for message_id, fields in entries:
                cursor = message_id
                event = await self._decode_or_dead_letter(topic, group, partition, message_id, fields)
                if event is not None:
                    yield event

        # Phase 2: never-delivered entries
        failures = 0
        while not stop.is_set():
            try:
                entries = await self._read(group, consumer, stream, ">", block=self._block_ms)
                failures = 0
            except ConsumeError as e:
                delay = compute_backoff(failures, base_delay=0.5, max_delay=10.0)
                failures += 1
                logger.error(f"Read from '{stream}' failed ({e}); retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            for message_id, fields in entries:
                event = await self._decode_or_dead_letter(topic, group, partition, message_id, fields)
                if event is not None:
                    yield event

        logger.info(f"Consumer '{consumer}' in group '{group}' stopped reading '{stream}'")

    async def _read(
        self,
        group: str,
        consumer: str,
        stream: str,
        cursor: str,
        block: int | None,
    ) -> list[tuple[str, dict | None]]:
        """One XREADGROUP call, normalized to [(message_id, fields)]."""
        try:
            response = await self._redis.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={stream: cursor},
                count=self._read_count,
                block=block,
            )
        except ResponseError as e:
            if "NOGROUP" in str(e):
                # Stream or group deleted underneath us; recreate and start over
                topic, _, partition = stream.rpartition(":")
                await self.ensure_group(topic, group, int(partition))
                return []
            raise ConsumeError(str(e)) from e
        except _TRANSIENT_ERRORS as e:
            raise ConsumeError(str(e)) from e

        if not response:
            return []

        # RESP2 returns [[stream, entries]]; RESP3 returns {stream: [entries]}
        if isinstance(response, dict):
            batches = response.values()
        else:
            batches = [entries for _, entries in response]

        result: list[tuple[str, dict | None]] = []
        for entries in batches:
            for message_id, fields in entries:
                result.append((message_id, dict(fields) if fields else None))
        return result

    async def _decode_or_dead_letter(
        self,
        topic: str,
        group: str,
        partition: int,
        message_id: str,
        fields: dict | None,
    ) -> Event | None:
        """Decode an entry; undecodable entries are dead-lettered and acked here."""
        stream = stream_name(topic, partition)

        if fields is None:
            # Pending entry whose payload was trimmed from the stream
            logger.warning(f"Entry {message_id} on '{stream}' no longer exists; acking")
            try:
                await self._redis.xack(stream, group, message_id)
            except _TRANSIENT_ERRORS as e:
                raise ConsumeError(f"Failed to ack trimmed entry {message_id} on '{stream}': {e}") from e
            return None

        try:
            return decode_event(fields, message_id=message_id, partition=partition)
        except MalformedEventError as e:
            logger.error(f"Malformed entry {message_id} on '{stream}': {e}")
            error = str(e)

        # The entry stays pending if either write fails, so it is retried on resubscribe
        try:
            await self._redis.xadd(
                dead_letter_stream(topic),
                {
                    **{k: str(v) for k, v in fields.items()},
                    "group": group,
                    "original_stream": stream,
                    "original_message_id": message_id,
                    "error": error,
                    "failed_at": datetime.now(UTC).isoformat(),
                },
            )
            await self._redis.xack(stream, group, message_id)
        except _TRANSIENT_ERRORS as e:
            raise ConsumeError(f"Failed to dead-letter malformed entry {message_id} on '{stream}': {e}") from e
        return None

    async def ack(self, event: Event, group: str) -> None:
        """
        Advance ``group``'s cursor past ``event``.

        Raises:
            ConsumeError: If the event was not read from the bus or Redis
                rejected the XACK.
        """
        if event.message_id is None or event.partition is None:
            raise ConsumeError(f"Event {event.event_id} was not read from the bus")
        stream = stream_name(event.topic, event.partition)
        try:
            await self._redis.xack(stream, group, event.message_id)
        except _TRANSIENT_ERRORS as e:
            raise ConsumeError(f"Failed to ack {event.message_id} on '{stream}': {e}") from e

    async def dead_letter(self, event: Event, group: str, error: str, attempts: int = 0) -> str:
        """
        Copy an event that exhausted its retries to ``dead-letter:{topic}``.

        Returns:
            Message ID of the dead-letter entry.
        """
        entry = {
            **event.to_fields(),
            "group": group,
            "original_stream": stream_name(event.topic, event.partition or 0),
            "original_message_id": event.message_id or "",
            "attempts": str(attempts),
            "error": error,
            "failed_at": datetime.now(UTC).isoformat(),
        }
        try:
            message_id = await self._redis.xadd(dead_letter_stream(event.topic), entry)
        except _TRANSIENT_ERRORS as e:
            raise ConsumeError(f"Failed to dead-letter {event.event_id}: {e}") from e

        logger.warning(
            f"Dead-lettered event {event.event_id} from '{entry['original_stream']}' "
            f"after {attempts} attempts: {error}"
        )
        return message_id


def decode_event(fields: dict, message_id: str | None = None, partition: int | None = None) -> Event:
    """
    Rebuild an Event from a stream entry's field map.

    Raises:
        MalformedEventError: If required fields are missing or the payload
            is not a JSON object.
    """
    try:
        payload = json.loads(fields["payload"])
        if not isinstance(payload, dict):
            raise MalformedEventError("payload is not a JSON object")
        return Event(
            event_id=fields["event_id"],
            topic=fields["topic"],
            key=fields["key"],
            payload=payload,
            timestamp=datetime.fromisoformat(fields["timestamp"]),
            message_id=message_id,
            partition=partition,
        )
    except MalformedEventError:
        raise
    except (KeyError, ValueError, TypeError) as e:
        raise MalformedEventError(f"Cannot decode stream entry: {e!r}") from e
