"""
Outbox writer: atomic enqueue inside the caller's transaction.

An event written through ``enqueue`` exists if and only if the surrounding
transaction commits. The wake-up NOTIFY is issued in the same transaction,
and PostgreSQL delivers it only on commit.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from pg_outbox.database import create_session_factory
from pg_outbox.error_handling import raise_external_service_error, raise_invalid_request
from pg_outbox.logging_utils import create_service_logger

if TYPE_CHECKING:
    from pg_outbox.config import OutboxSettings
    from pg_outbox.monitoring import OutboxMetrics
    from pg_outbox.protocols import OutboxRepositoryProtocol

logger = create_service_logger("pg_outbox.writer")

SERVICE_NAME = "pg_outbox"

T = TypeVar("T")


class OutboxWriter:
    """Writes events to the outbox as part of the caller's business transaction."""

    def __init__(
        self,
        engine: AsyncEngine,
        repository: OutboxRepositoryProtocol,
        settings: OutboxSettings,
        metrics: OutboxMetrics | None = None,
    ) -> None:
        self._session_factory = create_session_factory(engine)
        self.repository = repository
        self.settings = settings
        self._metrics = metrics

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session with a transaction that commits on normal exit.

        Any exception raised inside the block rolls the transaction back and
        propagates. The connection is returned to the pool on every exit path.
        """
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except Exception as e:
                logger.warning(
                    "Outbox transaction rolled back",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                raise

    async def with_transaction(self, body: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run body inside a transaction and return its result.

        Args:
            body: Coroutine function receiving the transactional session

        Returns:
            Whatever body returns, after the transaction has committed
        """
        async with self.transaction() as session:
            return await body(session)

    async def enqueue(
        self,
        session: AsyncSession,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        max_retries: int | None = None,
    ) -> UUID:
        """
        Insert a PENDING event as part of the session's open transaction.

        Args:
            session: Session with an open transaction (see ``transaction``)
            event_type: Type tag used to look up the handler
            payload: JSON-serializable mapping or pydantic model
            max_retries: Override of the configured MAX_RETRIES for this event

        Returns:
            UUID of the new event

        Raises:
            OutboxError: INVALID_REQUEST when called outside an open transaction,
                EXTERNAL_SERVICE_ERROR when the store rejects the write
        """
        if not session.in_transaction():
            raise_invalid_request(
                service=SERVICE_NAME,
                operation="enqueue",
                message="enqueue() must be called inside an open transaction",
                event_type=event_type,
            )
        if not event_type:
            raise_invalid_request(
                service=SERVICE_NAME,
                operation="enqueue",
                message="Event type tag must be a non-empty string",
            )
        if max_retries is not None and max_retries < 0:
            raise_invalid_request(
                service=SERVICE_NAME,
                operation="enqueue",
                message="max_retries must be non-negative",
                event_type=event_type,
                max_retries=max_retries,
            )

        serialized_payload = (
            payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
        )

        event_id = await self.repository.add_event(
            session,
            event_type=event_type,
            payload=serialized_payload,
            max_retries=self.settings.MAX_RETRIES if max_retries is None else max_retries,
        )

        try:
            await session.execute(select(func.pg_notify(self.settings.NOTIFY_CHANNEL, "")))
        except Exception as e:
            raise_external_service_error(
                service=SERVICE_NAME,
                operation="enqueue",
                external_service="database",
                message=f"Failed to queue outbox notification: {e.__class__.__name__}",
                correlation_id=event_id,
                channel=self.settings.NOTIFY_CHANNEL,
                error_type=e.__class__.__name__,
                error_details=str(e),
            )

        if self._metrics is not None:
            self._metrics.events_enqueued.labels(event_type=event_type).inc()

        logger.info(
            "Enqueued outbox event",
            extra={"event_id": str(event_id), "event_type": event_type},
        )
        return event_id
