"""
Event bus topic names and partitioning.

Topic names are part of the external contract and must not change.
Each topic is split into ``bus_partitions`` Redis streams; a key (the
owning user id) always hashes to the same partition, which is what
gives per-user ordering.
"""

import zlib
from enum import StrEnum

from app.core.models import ReportKind


class Topic(StrEnum):
    ALL_TASKS_REPORT = "all-tasks-topic"
    UNFINISHED_TASKS_REPORT = "unfinished-tasks-topic"
    FINISHED_TASKS_REPORT = "finished-tasks-topic"
    TASK_CHANGED = "task-changed"


REPORT_TOPICS: dict[ReportKind, Topic] = {
    ReportKind.ALL: Topic.ALL_TASKS_REPORT,
    ReportKind.UNFINISHED: Topic.UNFINISHED_TASKS_REPORT,
    ReportKind.FINISHED: Topic.FINISHED_TASKS_REPORT,
}

_KIND_BY_TOPIC: dict[str, ReportKind] = {t.value: k for k, t in REPORT_TOPICS.items()}


def report_kind_for(topic: str) -> ReportKind:
    """Inverse of REPORT_TOPICS. Raises KeyError for non-report topics."""
    return _KIND_BY_TOPIC[str(topic)]


def partition_for(key: str, partitions: int) -> int:
    """
    Stable partition for a key.

    crc32 rather than ``hash()``: string hashing is salted per process,
    and every publisher must agree on the partition.
    """
    return zlib.crc32(key.encode("utf-8")) % partitions


def stream_name(topic: str, partition: int) -> str:
    """Pattern: {topic}:{partition}"""
    return f"{topic}:{partition}"


def dead_letter_stream(topic: str) -> str:
    """Pattern: dead-letter:{topic}"""
    return f"dead-letter:{topic}"
