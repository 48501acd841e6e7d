"""
SQLAlchemy database models for the outbox tables.

Schema provisioning is owned by the embedding application; these models
describe the tables the library reads and writes and can be used with
``Base.metadata.create_all`` or a migration tool.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pg_outbox.status_enums import EventStatus


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OutboxEventDB(Base):
    """
    Durable unit of work written in the producer's transaction.

    Only the dispatcher mutates rows after insertion; rows are never deleted
    by the library.
    """

    __tablename__ = "outbox_events"

    id: Mapped[UUID] = mapped_column(
        PostgresUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EventStatus.PENDING.value,
        server_default=text(f"'{EventStatus.PENDING.value}'"),
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, server_default=text("5")
    )

    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'SENT', 'FAILED')",
            name="ck_outbox_events_status",
        ),
        CheckConstraint("retry_count >= 0", name="ck_outbox_events_retry_count"),
        Index("idx_outbox_events_status", "status"),
        Index("idx_outbox_events_next_run", "next_run_at"),
    )


class IdempotencyRecordDB(Base):
    """Fencing marker: existence of a key means the guarded operation already started."""

    __tablename__ = "outbox_idempotency"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
