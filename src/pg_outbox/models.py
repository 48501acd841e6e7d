"""
Value objects exchanged between the store and handlers.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from pg_outbox.status_enums import EventStatus

if TYPE_CHECKING:
    from pg_outbox.models_db import OutboxEventDB


class OutboxEvent(BaseModel):
    """
    Snapshot of an outbox row as seen by the dispatcher and handlers.

    The payload is opaque to the library; each handler interprets it
    according to the shape it expects for its event type.
    """

    id: UUID
    type: str
    payload: dict[str, Any]
    status: EventStatus
    retry_count: int
    max_retries: int
    next_run_at: datetime
    last_error: str | None = None
    created_at: datetime
    processed_at: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_db(cls, db_model: OutboxEventDB) -> OutboxEvent:
        return cls(
            id=db_model.id,
            type=db_model.type,
            payload=db_model.payload,
            status=EventStatus(db_model.status),
            retry_count=db_model.retry_count,
            max_retries=db_model.max_retries,
            next_run_at=db_model.next_run_at,
            last_error=db_model.last_error,
            created_at=db_model.created_at,
            processed_at=db_model.processed_at,
        )
