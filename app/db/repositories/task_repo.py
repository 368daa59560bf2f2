"""
Task snapshot repository.

Reads every task together with its owner's address in a single
statement inside a REPEATABLE READ transaction, so one scanner tick
works from one point-in-time view of the task table.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import SnapshotReadError
from app.core.interfaces import ITaskSnapshotSource
from app.core.models import TaskSnapshot
from app.db.mappers import snapshot_from_row
from app.db.models import Task, User

logger = logging.getLogger(__name__)


class TaskSnapshotRepository(ITaskSnapshotSource):
    """Read-only snapshot source backed by the task database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        isolation_level: str = "REPEATABLE READ",
    ):
        self._session_factory = session_factory
        self._isolation_level = isolation_level

    async def read_snapshot(self) -> list[TaskSnapshot]:
        """
        Load all tasks with owner addresses.

        Returns:
            Snapshots ordered by owner, then due date, then id.

        Raises:
            SnapshotReadError: On any database error.
        """
        stmt = (
            select(Task, User.email)
            .join(User, Task.user_id == User.id)
            .order_by(Task.user_id, Task.due_at.asc().nulls_last(), Task.id)
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.connection(
                        execution_options={"isolation_level": self._isolation_level}
                    )
                    result = await session.execute(stmt)
                    rows = result.all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Task snapshot read failed: {e}")
            raise SnapshotReadError(f"Could not read task snapshot: {e}") from e

        snapshots = [snapshot_from_row(task, email) for task, email in rows]
        logger.debug(f"Read snapshot of {len(snapshots)} tasks")
        return snapshots
