"""
Protocol interfaces for the outbox library.

These are the seams between the dispatcher and its collaborators. The
PostgreSQL implementations live in ``repository`` and ``notifications``;
tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from pg_outbox.models import OutboxEvent

if TYPE_CHECKING:
    from pg_outbox.context import DeliveryContext

# A guarded side effect: takes no arguments, awaited at most once per key
GuardedOperation = Callable[[], Awaitable[Any]]


class OutboxEventHandler(Protocol):
    """Signature every registered handler must satisfy."""

    async def __call__(self, event: OutboxEvent, context: DeliveryContext) -> Any:
        ...


class OutboxRepositoryProtocol(Protocol):
    """Persistence operations on the outbox_events table."""

    async def add_event(
        self,
        session: AsyncSession,
        event_type: str,
        payload: dict[str, Any],
        max_retries: int,
    ) -> UUID:
        """Insert a PENDING event inside the caller's open transaction."""
        ...

    async def claim_next_event(self, lease: timedelta) -> OutboxEvent | None:
        """Claim the oldest due PENDING event, or return None if nothing is claimable."""
        ...

    async def mark_event_sent(self, event_id: UUID, claimed_until: datetime) -> bool:
        """Transition a claimed event to SENT. Returns False if that claim is no longer held."""
        ...

    async def schedule_retry(
        self,
        event_id: UUID,
        claimed_until: datetime,
        retry_count: int,
        error: str,
        retry_delay: timedelta,
    ) -> bool:
        """Return a claimed event to PENDING, due after retry_delay."""
        ...

    async def mark_event_failed(
        self, event_id: UUID, claimed_until: datetime, retry_count: int, error: str
    ) -> bool:
        """Transition a claimed event to the terminal FAILED state."""
        ...

    async def release_expired_claims(self, error: str) -> tuple[int, int]:
        """Requeue PROCESSING events whose lease elapsed. Returns (requeued, failed)."""
        ...

    async def get_event_by_id(self, event_id: UUID) -> OutboxEvent | None:
        ...


class IdempotencyStoreProtocol(Protocol):
    """Insert-if-absent store backing the idempotency guard."""

    async def try_acquire(self, key: str) -> bool:
        """Insert a record for key. Returns True if inserted, False if it already existed."""
        ...


class NotificationListenerProtocol(Protocol):
    """Wake channel for idle dispatchers."""

    async def connect(self) -> None:
        ...

    async def wait(self, timeout: float) -> bool:
        """Block until a notification arrives or timeout elapses. True if notified."""
        ...

    def reset(self) -> None:
        """Forget notifications received so far."""
        ...

    def wake(self) -> None:
        """Release a pending wait from inside the process."""
        ...

    async def close(self) -> None:
        ...
