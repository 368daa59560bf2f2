"""
ORM → Pydantic mapping helpers for TaskPulse.

Converts rows read from the task store into immutable TaskSnapshot
models so nothing downstream of the scanner touches ORM objects.

Usage:
    from app.db.mappers import snapshot_from_row

    snapshot = snapshot_from_row(task, owner_email)
"""

import logging
from datetime import UTC, datetime

from app.core.models import TaskSnapshot, TaskStatus
from app.db.models import Task

logger = logging.getLogger(__name__)

# Legacy/alternate spellings written by older CRUD clients
_STATUS_ALIASES: dict[str, TaskStatus] = {
    "todo": TaskStatus.TODO,
    "open": TaskStatus.TODO,
    "new": TaskStatus.TODO,
    "in_progress": TaskStatus.IN_PROGRESS,
    "in-progress": TaskStatus.IN_PROGRESS,
    "doing": TaskStatus.IN_PROGRESS,
    "done": TaskStatus.DONE,
    "finished": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
}


def status_from_column(raw: str) -> TaskStatus:
    """Normalize a stored status. Unknown values count as unfinished."""
    status = _STATUS_ALIASES.get((raw or "").strip().lower())
    if status is None:
        logger.warning(f"Unknown task status {raw!r}; treating as todo")
        return TaskStatus.TODO
    return status


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def snapshot_from_row(task: Task, owner_email: str) -> TaskSnapshot:
    """
    Map a Task ORM row (plus its owner's address) to a TaskSnapshot.

    Args:
        task: Row loaded in the scanner's snapshot transaction.
        owner_email: Digest recipient for the task's owner.
    """
    return TaskSnapshot(
        id=str(task.id),
        owner_id=str(task.user_id),
        owner_email=owner_email or "",
        title=task.title or "",
        status=status_from_column(task.status),
        due_at=_aware(task.due_at),
        last_modified=_aware(task.updated_at),
    )
