"""
Database repository layer for TaskPulse.

TaskPulse never writes task data; the only repository is the read-only
snapshot source used by the scanner.

Usage:
    from app.db.repositories import TaskSnapshotRepository

    repo = TaskSnapshotRepository(get_session_factory())
    snapshots = await repo.read_snapshot()
"""

from app.db.repositories.task_repo import TaskSnapshotRepository

__all__ = [
    "TaskSnapshotRepository",
]
