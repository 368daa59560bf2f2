"""
Unit tests for the Redis Streams event bus.

Tests:
- Stable key → partition mapping and stream naming
- publish: XADD shape, retry on transient errors, PublishError on exhaustion
- Consumer groups: creation, BUSYGROUP tolerance
- subscribe: per-key order, pending replay after restart (resume from last ack)
- Malformed entries dead-lettered and acked, stream continues
- ack / dead_letter
"""

import asyncio
import json
from collections import defaultdict
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from app.core.exceptions import ConsumeError, MalformedEventError, PublishError
from app.core.models import Event
from app.events.bus import EventBus, decode_event
from app.events.topics import (
    Topic,
    dead_letter_stream,
    partition_for,
    report_kind_for,
    stream_name,
)

TOPIC = Topic.UNFINISHED_TASKS_REPORT.value


# ─── Helpers ─────────────────────────────────────────────────


def _seq(message_id: str) -> int:
    return int(message_id.split("-")[0])


class FakeStreamRedis:
    """Just enough of Redis Streams + consumer groups for the bus."""

    def __init__(self):
        self.streams: dict[str, list[tuple[str, dict]]] = defaultdict(list)
        self.groups: dict[tuple[str, str], dict] = {}
        self._seq = 0

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        self._seq += 1
        message_id = f"{self._seq}-0"
        self.streams[stream].append((message_id, dict(fields)))
        return message_id

    async def xgroup_create(self, stream, group, id="0", mkstream=False):
        if (stream, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups[(stream, group)] = {"delivered": 0, "pending": defaultdict(list)}
        self.streams.setdefault(stream, [])

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        ((stream, cursor),) = streams.items()
        state = self.groups.get((stream, groupname))
        if state is None:
            raise ResponseError("NOGROUP No such key or consumer group")
        pending = state["pending"][consumername]
        entries = self.streams[stream]

        if cursor == ">":
            batch = entries[state["delivered"]:state["delivered"] + (count or 10)]
            state["delivered"] += len(batch)
            pending.extend(mid for mid, _ in batch)
            if not batch:
                await asyncio.sleep(0.005)  # Stand-in for BLOCK
        else:
            batch = [
                (mid, fields) for mid, fields in entries
                if mid in pending and _seq(mid) > _seq(cursor)
            ][: count or 10]

        return [[stream, batch]] if batch else []

    async def xack(self, stream, group, *message_ids):
        acked = 0
        for pending in self.groups[(stream, group)]["pending"].values():
            for mid in message_ids:
                if mid in pending:
                    pending.remove(mid)
                    acked += 1
        return acked


async def _collect(bus: EventBus, partition: int, n: int, group="digest", consumer="c1", ack=True):
    """Read ``n`` events from one partition, then stop."""
    stop = asyncio.Event()
    seen: list[Event] = []

    async def run():
        async for event in bus.subscribe(TOPIC, group, consumer, partition, stop=stop):
            seen.append(event)
            if ack:
                await bus.ack(event, group)
            if len(seen) >= n:
                stop.set()

    await asyncio.wait_for(run(), timeout=2)
    return seen


# ─── Topics & Partitions ─────────────────────────────────────


class TestPartitioning:

    def test_partition_is_stable(self):
        assert partition_for("user-1", 4) == partition_for("user-1", 4)

    def test_partition_in_range(self):
        for i in range(100):
            assert 0 <= partition_for(f"user-{i}", 4) < 4

    def test_keys_spread_over_partitions(self):
        partitions = {partition_for(f"user-{i}", 4) for i in range(100)}
        assert partitions == {0, 1, 2, 3}

    def test_stream_names(self):
        assert stream_name("all-tasks-topic", 2) == "all-tasks-topic:2"
        assert dead_letter_stream("all-tasks-topic") == "dead-letter:all-tasks-topic"

    def test_report_kind_lookup(self):
        assert report_kind_for("finished-tasks-topic") == "finished"
        with pytest.raises(KeyError):
            report_kind_for(Topic.TASK_CHANGED)


# ─── Publish ─────────────────────────────────────────────────


class TestPublish:

    async def test_publish_appends_to_key_partition(self):
        redis = AsyncMock()
        redis.xadd.return_value = "1700000000000-0"
        bus = EventBus(redis, partitions=4, maxlen=5000)

        event = await bus.publish(TOPIC, "user-1", {"tasks": []}, event_id="tick:t:user-1")

        expected_partition = partition_for("user-1", 4)
        args, kwargs = redis.xadd.call_args
        assert args[0] == f"{TOPIC}:{expected_partition}"
        assert args[1]["event_id"] == "tick:t:user-1"
        assert json.loads(args[1]["payload"]) == {"tasks": []}
        assert kwargs == {"maxlen": 5000, "approximate": True}
        assert event.message_id == "1700000000000-0"
        assert event.partition == expected_partition

    @patch("app.core.resilience.asyncio.sleep", new_callable=AsyncMock)
    async def test_publish_retries_transient_errors(self, mock_sleep):
        redis = AsyncMock()
        redis.xadd.side_effect = [RedisConnectionError("reset"), "2-0"]
        bus = EventBus(redis, publish_max_retries=3)

        event = await bus.publish(TOPIC, "user-1", {})

        assert event.message_id == "2-0"
        assert redis.xadd.await_count == 2
        mock_sleep.assert_awaited_once()

    @patch("app.core.resilience.asyncio.sleep", new_callable=AsyncMock)
    async def test_publish_error_after_retries(self, mock_sleep):
        redis = AsyncMock()
        redis.xadd.side_effect = RedisConnectionError("down")
        bus = EventBus(redis, publish_max_retries=2)

        with pytest.raises(PublishError) as exc_info:
            await bus.publish(TOPIC, "user-1", {}, event_id="e1")

        assert redis.xadd.await_count == 3
        assert exc_info.value.details["event_id"] == "e1"


# ─── Consumer Groups ─────────────────────────────────────────


class TestConsumerGroups:

    async def test_ensure_group_creates_from_start(self):
        redis = AsyncMock()
        bus = EventBus(redis)
        assert await bus.ensure_group(TOPIC, "digest", 1) is True
        redis.xgroup_create.assert_awaited_once_with(f"{TOPIC}:1", "digest", id="0", mkstream=True)

    async def test_ensure_group_tolerates_existing(self):
        redis = AsyncMock()
        redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        assert await EventBus(redis).ensure_group(TOPIC, "digest", 0) is False

    async def test_ensure_group_other_errors_raise(self):
        redis = AsyncMock()
        redis.xgroup_create.side_effect = ResponseError("WRONGTYPE")
        with pytest.raises(ConsumeError):
            await EventBus(redis).ensure_group(TOPIC, "digest", 0)

    async def test_ensure_group_connection_error_is_consume_error(self):
        redis = AsyncMock()
        redis.xgroup_create.side_effect = RedisConnectionError("redis down")
        with pytest.raises(ConsumeError):
            await EventBus(redis).ensure_group(TOPIC, "digest", 0)


# ─── Subscribe ───────────────────────────────────────────────


class TestSubscribe:

    async def test_same_key_events_in_publish_order(self):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=2)
        for i in range(5):
            await bus.publish(TOPIC, "user-1", {"seq": i})

        events = await _collect(bus, partition_for("user-1", 2), n=5)

        assert [e.payload["seq"] for e in events] == [0, 1, 2, 3, 4]
        assert all(e.key == "user-1" for e in events)

    async def test_restart_resumes_from_last_ack(self):
        """Un-acked events are redelivered to the same consumer after a restart."""
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        for i in range(3):
            await bus.publish(TOPIC, "user-1", {"seq": i})

        stream = bus.subscribe(TOPIC, "digest", "c1", 0)
        first = await stream.__anext__()
        await bus.ack(first, "digest")
        await stream.__anext__()  # Delivered, never acked
        await stream.aclose()  # "Crash"

        events = await _collect(bus, 0, n=2)
        assert [e.payload["seq"] for e in events] == [1, 2]

    async def test_groups_have_independent_cursors(self):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        await bus.publish(TOPIC, "user-1", {"seq": 0})

        a = await _collect(bus, 0, n=1, group="digest")
        b = await _collect(bus, 0, n=1, group="audit")
        assert a[0].event_id == b[0].event_id

    async def test_malformed_entry_dead_lettered_and_skipped(self):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        await redis.xadd(stream_name(TOPIC, 0), {"garbage": "1"})
        await bus.publish(TOPIC, "user-1", {"seq": 1})

        events = await _collect(bus, 0, n=1)

        assert [e.payload["seq"] for e in events] == [1]
        dead = redis.streams[dead_letter_stream(TOPIC)]
        assert len(dead) == 1
        assert dead[0][1]["group"] == "digest"
        assert "Cannot decode" in dead[0][1]["error"]
        # The bad entry was acked, so nothing is left pending
        assert redis.groups[(stream_name(TOPIC, 0), "digest")]["pending"]["c1"] == []

    async def test_dead_letter_write_failure_leaves_entry_pending(self):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        await redis.xadd(stream_name(TOPIC, 0), {"garbage": "1"})
        real_xadd = redis.xadd

        async def failing_dead_letter(stream, fields, **kwargs):
            if stream == dead_letter_stream(TOPIC):
                raise RedisConnectionError("blip")
            return await real_xadd(stream, fields, **kwargs)

        redis.xadd = failing_dead_letter
        stream = bus.subscribe(TOPIC, "digest", "c1", 0)

        with pytest.raises(ConsumeError):
            await stream.__anext__()

        assert redis.streams[dead_letter_stream(TOPIC)] == []
        assert len(redis.groups[(stream_name(TOPIC, 0), "digest")]["pending"]["c1"]) == 1

    async def test_malformed_entry_ack_failure_is_consume_error(self):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        await redis.xadd(stream_name(TOPIC, 0), {"garbage": "1"})
        redis.xack = AsyncMock(side_effect=RedisConnectionError("blip"))

        with pytest.raises(ConsumeError):
            await bus.subscribe(TOPIC, "digest", "c1", 0).__anext__()

    async def test_trimmed_entry_ack_failure_is_consume_error(self):
        redis = AsyncMock()
        redis.xack.side_effect = RedisConnectionError("blip")
        bus = EventBus(redis, partitions=1)

        with pytest.raises(ConsumeError):
            await bus._decode_or_dead_letter(TOPIC, "digest", 0, "7-0", None)

    async def test_stop_ends_idle_subscription(self):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        stop = asyncio.Event()

        async def consume():
            return [e async for e in bus.subscribe(TOPIC, "digest", "c1", 0, stop=stop)]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.02)
        stop.set()
        assert await asyncio.wait_for(task, timeout=1) == []

    @patch("app.events.bus.asyncio.sleep", new_callable=AsyncMock)
    async def test_read_errors_do_not_end_sequence(self, mock_sleep):
        redis = FakeStreamRedis()
        bus = EventBus(redis, partitions=1)
        await bus.publish(TOPIC, "user-1", {"seq": 0})

        real_read = redis.xreadgroup
        calls = {"n": 0}

        async def flaky(**kwargs):
            calls["n"] += 1
            if kwargs["streams"] and list(kwargs["streams"].values())[0] == ">" and calls["n"] < 4:
                raise RedisConnectionError("blip")
            return await real_read(**kwargs)

        redis.xreadgroup = flaky
        events = await _collect(bus, 0, n=1)

        assert len(events) == 1
        assert mock_sleep.await_count >= 1


# ─── Ack & Dead Letter ───────────────────────────────────────


class TestAckAndDeadLetter:

    async def test_ack_requires_bus_metadata(self):
        bus = EventBus(AsyncMock())
        with pytest.raises(ConsumeError):
            await bus.ack(Event(topic=TOPIC, key="user-1"), "digest")

    async def test_ack_failure_is_consume_error(self):
        redis = AsyncMock()
        redis.xack.side_effect = RedisConnectionError("down")
        event = Event(topic=TOPIC, key="user-1", message_id="1-0", partition=0)
        with pytest.raises(ConsumeError):
            await EventBus(redis).ack(event, "digest")

    async def test_dead_letter_keeps_original_fields(self):
        redis = AsyncMock()
        redis.xadd.return_value = "9-0"
        event = Event(topic=TOPIC, key="user-1", payload={"a": 1}, message_id="3-0", partition=2)

        message_id = await EventBus(redis).dead_letter(event, "digest-x", error="smtp down", attempts=3)

        assert message_id == "9-0"
        stream, entry = redis.xadd.call_args.args
        assert stream == f"dead-letter:{TOPIC}"
        assert entry["event_id"] == event.event_id
        assert entry["original_stream"] == f"{TOPIC}:2"
        assert entry["original_message_id"] == "3-0"
        assert entry["attempts"] == "3"
        assert entry["error"] == "smtp down"


class TestDecodeEvent:

    def test_round_trip_fields(self):
        event = Event(topic=TOPIC, key="user-1", payload={"x": [1, 2]})
        decoded = decode_event(event.to_fields(), message_id="5-0", partition=1)
        assert decoded.event_id == event.event_id
        assert decoded.payload == {"x": [1, 2]}
        assert decoded.timestamp == event.timestamp
        assert decoded.message_id == "5-0"

    def test_missing_field(self):
        with pytest.raises(MalformedEventError):
            decode_event({"topic": TOPIC, "key": "u", "payload": "{}"})

    def test_payload_not_object(self):
        fields = Event(topic=TOPIC, key="u").to_fields()
        fields["payload"] = "[1, 2]"
        with pytest.raises(MalformedEventError):
            decode_event(fields)
