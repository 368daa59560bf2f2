"""
Abstract base classes for TaskPulse's external collaborators.

The persistence store and the mail transport live outside this core;
the scanner and the digest consumer only talk to them through these
contracts, so tests and alternative backends can be swapped in.
"""

from abc import ABC, abstractmethod

from app.core.models import DigestDocument, TaskChangeNotice, TaskSnapshot


class ITaskSnapshotSource(ABC):
    """Read-only view of current task state."""

    @abstractmethod
    async def read_snapshot(self) -> list[TaskSnapshot]:
        """
        Read every task in one consistent snapshot.

        All rows must come from the same point in time so a single scanner
        tick never sees a task in two states.

        Raises:
            SnapshotReadError: If the store cannot be read.
        """
        ...


class IMailTransport(ABC):
    """Delivers a rendered digest to its recipient."""

    @abstractmethod
    async def deliver(self, document: DigestDocument) -> None:
        """
        Send one digest.

        Raises:
            MailDeliveryError: On any transport failure. Callers treat this
                as retryable.
        """
        ...


class INoticeChannel(ABC):
    """Message-passing boundary between the request path and the live dispatcher."""

    @abstractmethod
    def publish(self, notice: TaskChangeNotice) -> bool:
        """
        Hand a notice to the channel without blocking the caller.

        Returns:
            True if the notice was accepted, False if it was dropped.
        """
        ...

    @abstractmethod
    async def get(self) -> TaskChangeNotice:
        """Wait for the next notice."""
        ...

    async def start(self) -> None:
        """Open any underlying connections. No-op by default."""

    async def close(self) -> None:
        """Release any underlying connections. No-op by default."""
