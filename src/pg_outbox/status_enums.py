"""
pg_outbox.status_enums - Lifecycle states of an outbox event.
"""

from __future__ import annotations

from enum import Enum


class EventStatus(str, Enum):
    """
    Delivery status persisted on every outbox event.

    Transitions: PENDING -> PROCESSING (claim) -> SENT | PENDING (retry) | FAILED.
    SENT and FAILED are terminal.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.SENT, EventStatus.FAILED)
