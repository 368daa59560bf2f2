"""
SQLAlchemy 2.0 ORM read models for TaskPulse.

The tables are owned and migrated by the task CRUD service; TaskPulse
only reads them to build scanner snapshots. Only the columns the
scanner needs are mapped.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Unicode
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class User(Base):
    """Task owner; only the digest recipient address is needed."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    email: Mapped[str] = mapped_column(Unicode(320), nullable=False)

    tasks: Mapped[list["Task"]] = relationship(back_populates="owner", viewonly=True)


class Task(Base):
    """A user's task row as maintained by the CRUD service."""

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(Unicode(500), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    owner: Mapped[User] = relationship(back_populates="tasks", viewonly=True)
