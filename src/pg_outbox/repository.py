"""
PostgreSQL implementation of the outbox store.

Implements OutboxRepositoryProtocol and IdempotencyStoreProtocol on top of
SQLAlchemy's async ORM. Mutual exclusion between concurrent dispatchers
comes entirely from ``SELECT ... FOR UPDATE SKIP LOCKED`` in the claim
statement; no application-level locking is involved.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from pg_outbox.database import create_session_factory
from pg_outbox.error_handling import raise_external_service_error
from pg_outbox.logging_utils import create_service_logger
from pg_outbox.models import OutboxEvent
from pg_outbox.models_db import IdempotencyRecordDB, OutboxEventDB
from pg_outbox.status_enums import EventStatus

logger = create_service_logger("pg_outbox.repository")

SERVICE_NAME = "pg_outbox"


class PostgreSQLOutboxRepository:
    """
    PostgreSQL implementation of the outbox event and idempotency store.

    Every method except ``add_event`` runs in its own short transaction.
    ``add_event`` writes through the caller's session so the insert commits
    or rolls back together with the caller's business writes.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        """
        Initialize with async engine.

        Args:
            engine: AsyncEngine for database connections
        """
        self._session_factory = create_session_factory(engine)

    async def add_event(
        self,
        session: AsyncSession,
        event_type: str,
        payload: dict[str, Any],
        max_retries: int,
    ) -> UUID:
        """
        Add event to the outbox within the caller's transaction.

        Args:
            session: Session with an open transaction owned by the caller
            event_type: Type tag used to look up the handler
            payload: JSON-serializable event payload
            max_retries: Failed attempts allowed before the event becomes FAILED

        Returns:
            UUID of the created outbox entry
        """
        event_id = uuid4()
        try:
            session.add(
                OutboxEventDB(
                    id=event_id,
                    type=event_type,
                    payload=payload,
                    status=EventStatus.PENDING.value,
                    retry_count=0,
                    max_retries=max_retries,
                )
            )
            await session.flush()
        except Exception as e:
            raise_external_service_error(
                service=SERVICE_NAME,
                operation="add_event",
                external_service="database",
                message=f"Failed to add event to outbox: {e.__class__.__name__}",
                correlation_id=event_id,
                event_type=event_type,
                error_type=e.__class__.__name__,
                error_details=str(e),
            )

        logger.debug(
            "Added event to outbox",
            extra={"event_id": str(event_id), "event_type": event_type},
        )
        return event_id

    async def claim_next_event(self, lease: timedelta) -> OutboxEvent | None:
        """
        Claim the oldest due PENDING event.

        The selected row is locked with SKIP LOCKED, flipped to PROCESSING and
        returned in one short transaction. While PROCESSING, ``next_run_at``
        holds the lease expiry used by crash recovery.

        Args:
            lease: How long the claim is valid before recovery may requeue it

        Returns:
            The claimed event, or None if nothing is claimable
        """
        due_event_id = (
            select(OutboxEventDB.id)
            .where(
                OutboxEventDB.status == EventStatus.PENDING.value,
                OutboxEventDB.next_run_at <= func.now(),
            )
            .order_by(OutboxEventDB.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(OutboxEventDB)
            .where(OutboxEventDB.id == due_event_id)
            .values(
                status=EventStatus.PROCESSING.value,
                next_run_at=func.now() + lease,
            )
            .returning(OutboxEventDB)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(stmt)
                    db_event = result.scalar_one_or_none()
                    claimed = OutboxEvent.from_db(db_event) if db_event is not None else None
            except Exception as e:
                raise_external_service_error(
                    service=SERVICE_NAME,
                    operation="claim_next_event",
                    external_service="database",
                    message=f"Failed to claim outbox event: {e.__class__.__name__}",
                    error_type=e.__class__.__name__,
                    error_details=str(e),
                )

        if claimed is not None:
            logger.debug(
                "Claimed outbox event",
                extra={"event_id": str(claimed.id), "event_type": claimed.type},
            )
        return claimed

    async def mark_event_sent(self, event_id: UUID, claimed_until: datetime) -> bool:
        """
        Mark a claimed event as successfully delivered.

        Args:
            event_id: ID of the outbox event
            claimed_until: Lease expiry returned by the claim being reconciled

        Returns:
            False if that claim is no longer held and nothing was updated
        """
        stmt = (
            update(OutboxEventDB)
            .where(*self._claim_held(event_id, claimed_until))
            .values(status=EventStatus.SENT.value, processed_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return await self._apply_transition(stmt, event_id, "mark_event_sent")

    async def schedule_retry(
        self,
        event_id: UUID,
        claimed_until: datetime,
        retry_count: int,
        error: str,
        retry_delay: timedelta,
    ) -> bool:
        """
        Return a claimed event to PENDING after a failed attempt.

        Args:
            event_id: ID of the outbox event
            claimed_until: Lease expiry returned by the claim being reconciled
            retry_count: Attempt counter after this failure
            error: Error message from the failed attempt
            retry_delay: Delay before the event becomes claimable again
        """
        stmt = (
            update(OutboxEventDB)
            .where(*self._claim_held(event_id, claimed_until))
            .values(
                status=EventStatus.PENDING.value,
                retry_count=retry_count,
                last_error=error,
                next_run_at=func.now() + retry_delay,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._apply_transition(stmt, event_id, "schedule_retry")

    async def mark_event_failed(
        self, event_id: UUID, claimed_until: datetime, retry_count: int, error: str
    ) -> bool:
        """
        Mark an event as permanently failed after exhausting its retries.

        Args:
            event_id: ID of the outbox event
            claimed_until: Lease expiry returned by the claim being reconciled
            retry_count: Attempt counter after the final failure
            error: Final error message
        """
        stmt = (
            update(OutboxEventDB)
            .where(*self._claim_held(event_id, claimed_until))
            .values(
                status=EventStatus.FAILED.value,
                retry_count=retry_count,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        return await self._apply_transition(stmt, event_id, "mark_event_failed")

    @staticmethod
    def _claim_held(event_id: UUID, claimed_until: datetime) -> tuple[Any, ...]:
        # The lease stamp identifies the claim; a recovered and re-claimed row carries a new one
        return (
            OutboxEventDB.id == event_id,
            OutboxEventDB.status == EventStatus.PROCESSING.value,
            OutboxEventDB.next_run_at == claimed_until,
        )

    async def _apply_transition(self, stmt: Any, event_id: UUID, operation: str) -> bool:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(stmt)
            except Exception as e:
                raise_external_service_error(
                    service=SERVICE_NAME,
                    operation=operation,
                    external_service="database",
                    message=f"Failed to update outbox event: {e.__class__.__name__}",
                    correlation_id=event_id,
                    event_id=str(event_id),
                    error_type=e.__class__.__name__,
                    error_details=str(e),
                )

        if result.rowcount == 0:
            logger.warning(
                "Outbox event claim no longer held, transition skipped",
                extra={"event_id": str(event_id), "operation": operation},
            )
            return False
        return True

    async def release_expired_claims(self, error: str) -> tuple[int, int]:
        """
        Requeue PROCESSING events whose claim lease has elapsed.

        An expired lease counts as a failed attempt: retry_count is incremented
        and the event becomes FAILED if that exhausts its retries.

        Args:
            error: Diagnostic recorded as last_error on recovered events

        Returns:
            Tuple of (requeued, failed) counts
        """
        next_retry_count = OutboxEventDB.retry_count + 1
        stmt = (
            update(OutboxEventDB)
            .where(
                OutboxEventDB.status == EventStatus.PROCESSING.value,
                OutboxEventDB.next_run_at <= func.now(),
            )
            .values(
                retry_count=next_retry_count,
                status=case(
                    (next_retry_count > OutboxEventDB.max_retries, EventStatus.FAILED.value),
                    else_=EventStatus.PENDING.value,
                ),
                next_run_at=func.now(),
                last_error=error,
            )
            .returning(OutboxEventDB.status)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(stmt)
                    statuses = list(result.scalars().all())
            except Exception as e:
                raise_external_service_error(
                    service=SERVICE_NAME,
                    operation="release_expired_claims",
                    external_service="database",
                    message=f"Failed to release expired claims: {e.__class__.__name__}",
                    error_type=e.__class__.__name__,
                    error_details=str(e),
                )

        failed = statuses.count(EventStatus.FAILED.value)
        return len(statuses) - failed, failed

    async def get_event_by_id(self, event_id: UUID) -> OutboxEvent | None:
        """
        Retrieve specific outbox event by ID.

        Args:
            event_id: ID of the outbox event

        Returns:
            Outbox event or None if not found
        """
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    select(OutboxEventDB).where(OutboxEventDB.id == event_id)
                )
                db_event = result.scalar_one_or_none()
            except Exception as e:
                raise_external_service_error(
                    service=SERVICE_NAME,
                    operation="get_event_by_id",
                    external_service="database",
                    message=f"Failed to retrieve event by ID: {e.__class__.__name__}",
                    correlation_id=event_id,
                    event_id=str(event_id),
                    error_type=e.__class__.__name__,
                    error_details=str(e),
                )

        return OutboxEvent.from_db(db_event) if db_event is not None else None

    async def try_acquire(self, key: str) -> bool:
        """
        Insert an idempotency record if none exists for key.

        Args:
            key: Caller-chosen idempotency key

        Returns:
            True if this call created the record, False if it already existed
        """
        stmt = (
            pg_insert(IdempotencyRecordDB)
            .values(key=key)
            .on_conflict_do_nothing(index_elements=[IdempotencyRecordDB.key])
        )

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(stmt)
            except Exception as e:
                raise_external_service_error(
                    service=SERVICE_NAME,
                    operation="try_acquire_idempotency_key",
                    external_service="database",
                    message=f"Failed to insert idempotency record: {e.__class__.__name__}",
                    idempotency_key=key,
                    error_type=e.__class__.__name__,
                    error_details=str(e),
                )

        return bool(result.rowcount)
