"""
Pydantic domain models for TaskPulse.

These models represent the data flowing through the notification pipeline:
TaskSnapshot → Event (report topics) → DigestDocument → mail transport
TaskChangeNotice → live sessions
"""

import json
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class TaskStatus(StrEnum):
    """Lifecycle status of a task row."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class ReportKind(StrEnum):
    """Classification sets the scanner builds for each user."""
    ALL = "all"
    UNFINISHED = "unfinished"
    FINISHED = "finished"


class TaskAction(StrEnum):
    """Mutation that raised a live change notice."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# ─── Scanner Read Model ───────────────────────────────────────


class TaskSnapshot(BaseModel):
    """A task as seen by the scanner at scan time. Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    owner_email: str = ""
    title: str = ""
    status: TaskStatus
    due_at: datetime | None = None
    last_modified: datetime

    @property
    def is_finished(self) -> bool:
        return self.status == TaskStatus.DONE

    def sort_key(self) -> tuple:
        """Tasks without a due date go last, ties broken by id."""
        due = self.due_at.timestamp() if self.due_at else float("inf")
        return (due, self.id)


# ─── Event Bus ────────────────────────────────────────────────


class Event(BaseModel):
    """
    A message on the event bus.

    ``key`` is the partitioning key (always the owning user id), so all
    events for one user land on the same partition in publish order.
    ``message_id`` and ``partition`` are only set on events read back
    from the bus.
    """

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    topic: str
    key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    message_id: str | None = None
    partition: int | None = None

    def to_fields(self) -> dict[str, str]:
        """Flatten to the string field map stored in a stream entry."""
        return {
            "event_id": self.event_id,
            "topic": self.topic,
            "key": self.key,
            "payload": json.dumps(self.payload, default=str, separators=(",", ":")),
            "timestamp": self.timestamp.isoformat(),
        }


# ─── Digest ───────────────────────────────────────────────────


class DigestDocument(BaseModel):
    """One email's worth of report content. Handed once to the mail transport."""

    recipient_address: str = Field(..., min_length=3)
    report_kind: ReportKind
    tasks: list[TaskSnapshot] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)
    source_event_id: str = ""

    @property
    def subject(self) -> str:
        titles = {
            ReportKind.ALL: "Your tasks",
            ReportKind.UNFINISHED: "Tasks still open",
            ReportKind.FINISHED: "Tasks you finished",
        }
        return f"{titles[self.report_kind]} ({len(self.tasks)})"

    def render_text(self) -> str:
        """Plain-text body. One line per task, due date first."""
        lines = [self.subject, ""]
        for task in self.tasks:
            due = task.due_at.strftime("%Y-%m-%d") if task.due_at else "no due date"
            lines.append(f"- [{task.status.value}] {task.title or task.id} (due {due})")
        if not self.tasks:
            lines.append("Nothing to report.")
        lines.append("")
        lines.append(f"Generated {self.generated_at.isoformat()}")
        return "\n".join(lines)


# ─── Live Notifications ───────────────────────────────────────


class TaskChangeNotice(BaseModel):
    """Raised in the request path whenever a task is created, updated or deleted."""

    user_id: str
    action: TaskAction
    task: dict[str, Any] | None = None
    previous: dict[str, Any] | None = None
    raised_at: datetime = Field(default_factory=utc_now)

    @property
    def task_id(self) -> str | None:
        source = self.task or self.previous or {}
        value = source.get("id")
        return str(value) if value is not None else None
