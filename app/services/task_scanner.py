"""
Task scanner.

Each tick reads one consistent snapshot of every task, classifies the
tasks of each owner into the three report kinds and publishes one event
per (owner, report kind) with a non-empty task set.

Event ids are ``{tick_id}:{topic}:{user_id}``. A tick never produces two
events with the same id, and a consumer that sees an id twice knows the
second copy is a redelivery.

Publish failures do not abort the tick: the remaining batches are still
published and the failed event ids are logged and returned so an
operator (or a later tick) can pick them up. The scanner never re-scans
to retry.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from app.core.exceptions import PublishError, SnapshotReadError
from app.core.interfaces import ITaskSnapshotSource
from app.core.models import ReportKind, TaskSnapshot, utc_now
from app.events.bus import EventBus
from app.events.topics import REPORT_TOPICS

logger = logging.getLogger(__name__)


class ScannerState(StrEnum):
    IDLE = "idle"
    SCANNING = "scanning"
    PUBLISHING = "publishing"


@dataclass
class ReportBatch:
    """Tasks of one owner for one report kind, already sorted."""

    user_id: str
    recipient: str
    report_kind: ReportKind
    tasks: list[TaskSnapshot]

    @property
    def topic(self) -> str:
        return REPORT_TOPICS[self.report_kind].value

    def event_id(self, tick_id: str) -> str:
        return f"{tick_id}:{self.topic}:{self.user_id}"


@dataclass
class ScanResult:
    """Outcome of one scanner tick."""

    tick_id: str
    started_at: datetime
    skipped: bool = False
    error: str | None = None
    tasks_read: int = 0
    users: int = 0
    published: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "error": self.error,
            "tasks_read": self.tasks_read,
            "users": self.users,
            "published": len(self.published),
            "failed": list(self.failed),
        }


def classify_snapshot(snapshot: list[TaskSnapshot]) -> list[ReportBatch]:
    """
    Group a snapshot into report batches.

    Every owner gets an ALL batch; UNFINISHED and FINISHED batches are only
    built when non-empty. If a task id appears more than once, the copy with
    the latest ``last_modified`` wins so a task is never reported in two
    contradictory states within one tick.
    """
    latest: dict[str, TaskSnapshot] = {}
    for task in snapshot:
        current = latest.get(task.id)
        if current is None or task.last_modified > current.last_modified:
            latest[task.id] = task

    by_owner: dict[str, list[TaskSnapshot]] = defaultdict(list)
    for task in latest.values():
        by_owner[task.owner_id].append(task)

    batches: list[ReportBatch] = []
    for owner_id in sorted(by_owner):
        tasks = sorted(by_owner[owner_id], key=TaskSnapshot.sort_key)
        recipient = next((t.owner_email for t in tasks if t.owner_email), "")
        kinds = {
            ReportKind.ALL: tasks,
            ReportKind.UNFINISHED: [t for t in tasks if not t.is_finished],
            ReportKind.FINISHED: [t for t in tasks if t.is_finished],
        }
        for kind, selected in kinds.items():
            if selected:
                batches.append(
                    ReportBatch(
                        user_id=owner_id,
                        recipient=recipient,
                        report_kind=kind,
                        tasks=selected,
                    )
                )
    return batches


def build_payload(batch: ReportBatch, tick_id: str, generated_at: datetime) -> dict:
    """Event payload read back by the digest consumer."""
    return {
        "tick_id": tick_id,
        "user_id": batch.user_id,
        "recipient": batch.recipient,
        "report_kind": batch.report_kind.value,
        "generated_at": generated_at.isoformat(),
        "tasks": [t.model_dump(mode="json") for t in batch.tasks],
    }


class TaskScanner:
    """
    Periodic snapshot-classify-publish cycle.

    Usage:
        scanner = TaskScanner(TaskSnapshotRepository(session_factory), bus)
        result = await scanner.run_tick()
    """

    def __init__(self, source: ITaskSnapshotSource, bus: EventBus):
        self._source = source
        self._bus = bus
        self.state = ScannerState.IDLE

    async def run_tick(self, tick_id: str | None = None) -> ScanResult:
        """
        Run one tick. A tick requested while another is in progress is
        skipped rather than queued.
        """
        tick_id = tick_id or uuid.uuid4().hex[:12]
        result = ScanResult(tick_id=tick_id, started_at=utc_now())

        if self.state != ScannerState.IDLE:
            logger.warning(f"[scanner] Tick {tick_id} skipped, scanner is {self.state}")
            result.skipped = True
            return result

        self.state = ScannerState.SCANNING
        try:
            try:
                snapshot = await self._source.read_snapshot()
            except SnapshotReadError as e:
                logger.error(f"[scanner] Tick {tick_id} could not read tasks: {e.message}")
                result.error = e.message
                return result

            batches = classify_snapshot(snapshot)
            result.tasks_read = len(snapshot)
            result.users = len({b.user_id for b in batches})

            self.state = ScannerState.PUBLISHING
            await self._publish_batches(batches, result)
        finally:
            self.state = ScannerState.IDLE

        if result.failed:
            logger.error(
                "scan_publish_failed",
                extra={"tick_id": tick_id, "event_ids": result.failed},
            )

        logger.info(
            f"[scanner] Tick {tick_id}: {result.tasks_read} tasks, {result.users} users, "
            f"{len(result.published)} published, {len(result.failed)} failed"
        )
        return result

    async def _publish_batches(self, batches: list[ReportBatch], result: ScanResult) -> None:
        for batch in batches:
            event_id = batch.event_id(result.tick_id)
            payload = build_payload(batch, result.tick_id, result.started_at)
            try:
                await self._bus.publish(batch.topic, batch.user_id, payload, event_id=event_id)
                result.published.append(event_id)
            except PublishError as e:
                logger.warning(f"[scanner] Publish of {event_id} failed: {e.message}")
                result.failed.append(event_id)
