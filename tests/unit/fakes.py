"""
In-memory test doubles for the outbox protocols.

The fakes keep state in plain dicts so tests can assert on it directly, and
honor the same claim check on reconcile as the PostgreSQL repository: a
transition applies only while the row is PROCESSING under the lease stamp
returned by the claim.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from pg_outbox.models import OutboxEvent
from pg_outbox.status_enums import EventStatus


class FakeOutboxRepository:
    """Test implementation of OutboxRepositoryProtocol and IdempotencyStoreProtocol."""

    def __init__(self) -> None:
        self.events: dict[UUID, OutboxEvent] = {}
        self.idempotency_keys: set[str] = set()
        self.retry_delays: dict[UUID, list[timedelta]] = {}
        self.claim_error: Exception | None = None
        self.claim_calls = 0
        self.recovery_calls = 0

    def seed(
        self,
        event_type: str = "order.created",
        payload: dict[str, Any] | None = None,
        retry_count: int = 0,
        max_retries: int = 5,
        status: EventStatus = EventStatus.PENDING,
    ) -> OutboxEvent:
        now = datetime.now(UTC)
        event = OutboxEvent(
            id=uuid4(),
            type=event_type,
            payload=payload or {},
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
            next_run_at=now,
            created_at=now,
        )
        self.events[event.id] = event
        return event

    def _update(self, event_id: UUID, **changes: Any) -> None:
        self.events[event_id] = self.events[event_id].model_copy(update=changes)

    async def add_event(
        self,
        session: Any,
        event_type: str,
        payload: dict[str, Any],
        max_retries: int,
    ) -> UUID:
        return self.seed(event_type=event_type, payload=payload, max_retries=max_retries).id

    async def claim_next_event(self, lease: timedelta) -> OutboxEvent | None:
        self.claim_calls += 1
        if self.claim_error is not None:
            raise self.claim_error

        now = datetime.now(UTC)
        due = [
            e
            for e in self.events.values()
            if e.status is EventStatus.PENDING and e.next_run_at <= now
        ]
        if not due:
            return None

        event = min(due, key=lambda e: e.created_at)
        self._update(event.id, status=EventStatus.PROCESSING, next_run_at=now + lease)
        return self.events[event.id]

    def _claim_held(self, event_id: UUID, claimed_until: datetime) -> bool:
        event = self.events[event_id]
        return event.status is EventStatus.PROCESSING and event.next_run_at == claimed_until

    async def mark_event_sent(self, event_id: UUID, claimed_until: datetime) -> bool:
        if not self._claim_held(event_id, claimed_until):
            return False
        self._update(event_id, status=EventStatus.SENT, processed_at=datetime.now(UTC))
        return True

    async def schedule_retry(
        self,
        event_id: UUID,
        claimed_until: datetime,
        retry_count: int,
        error: str,
        retry_delay: timedelta,
    ) -> bool:
        if not self._claim_held(event_id, claimed_until):
            return False
        self.retry_delays.setdefault(event_id, []).append(retry_delay)
        # Due immediately so tests can drive the next attempt without sleeping
        self._update(
            event_id,
            status=EventStatus.PENDING,
            retry_count=retry_count,
            last_error=error,
            next_run_at=datetime.now(UTC),
        )
        return True

    async def mark_event_failed(
        self, event_id: UUID, claimed_until: datetime, retry_count: int, error: str
    ) -> bool:
        if not self._claim_held(event_id, claimed_until):
            return False
        self._update(
            event_id, status=EventStatus.FAILED, retry_count=retry_count, last_error=error
        )
        return True

    async def release_expired_claims(self, error: str) -> tuple[int, int]:
        self.recovery_calls += 1
        now = datetime.now(UTC)
        requeued = failed = 0
        for event in list(self.events.values()):
            if event.status is not EventStatus.PROCESSING or event.next_run_at > now:
                continue
            retry_count = event.retry_count + 1
            if retry_count > event.max_retries:
                status = EventStatus.FAILED
                failed += 1
            else:
                status = EventStatus.PENDING
                requeued += 1
            self._update(
                event.id, status=status, retry_count=retry_count, last_error=error, next_run_at=now
            )
        return requeued, failed

    async def get_event_by_id(self, event_id: UUID) -> OutboxEvent | None:
        return self.events.get(event_id)

    async def try_acquire(self, key: str) -> bool:
        if key in self.idempotency_keys:
            return False
        self.idempotency_keys.add(key)
        return True


class FakeNotificationListener:
    """Test implementation of NotificationListenerProtocol without a database."""

    def __init__(self, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.connected = False
        self.closed = False
        self.wait_calls: list[float] = []
        self._event = asyncio.Event()

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionError("listener unavailable")
        self.connected = True

    async def wait(self, timeout: float) -> bool:
        self.wait_calls.append(timeout)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._event.clear()
        return True

    def reset(self) -> None:
        self._event.clear()

    def wake(self) -> None:
        self._event.set()

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class RecordingHandler:
    """Handler that records deliveries and fails a configurable number of times."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or RuntimeError("downstream unavailable")
        self.calls: list[OutboxEvent] = []

    async def __call__(self, event: OutboxEvent, context: Any) -> None:
        self.calls.append(event)
        if len(self.calls) <= self.failures:
            raise self.error
