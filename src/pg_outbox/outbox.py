"""
Application-facing entry point.

``Outbox`` bundles the writer, registry, idempotency guard and a dispatcher
over one engine, for applications that do not wire the components through
the dishka provider in ``pg_outbox.di``.

Example:
    outbox = create_outbox()
    outbox.register_handlers({"order.created": handle_order_created})
    await outbox.start()

    async with outbox.transaction() as session:
        session.add(order)
        await outbox.enqueue(session, "order.created", {"id": order.id})
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from pg_outbox.config import OutboxSettings
from pg_outbox.database import create_outbox_engine
from pg_outbox.dispatcher import OutboxDispatcher
from pg_outbox.idempotency import IdempotencyGuard
from pg_outbox.logging_utils import create_service_logger
from pg_outbox.notifications import PostgresNotificationListener
from pg_outbox.registry import HandlerRegistry
from pg_outbox.repository import PostgreSQLOutboxRepository
from pg_outbox.writer import OutboxWriter

if TYPE_CHECKING:
    from pg_outbox.models import OutboxEvent
    from pg_outbox.monitoring import OutboxMetrics
    from pg_outbox.protocols import OutboxEventHandler

logger = create_service_logger("pg_outbox.outbox")

T = TypeVar("T")


class Outbox:
    """Writer, handler registry and dispatcher sharing one engine and settings."""

    def __init__(
        self,
        engine: AsyncEngine,
        settings: OutboxSettings | None = None,
        metrics: OutboxMetrics | None = None,
    ) -> None:
        self.engine = engine
        self.settings = settings or OutboxSettings()
        self.metrics = metrics
        self.repository = PostgreSQLOutboxRepository(engine)
        self.writer = OutboxWriter(engine, self.repository, self.settings, metrics)
        self.registry = HandlerRegistry()
        self.guard = IdempotencyGuard(self.repository, metrics)
        self._dispatcher: OutboxDispatcher | None = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.writer.transaction() as session:
            yield session

    async def with_transaction(self, body: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await self.writer.with_transaction(body)

    async def enqueue(
        self,
        session: AsyncSession,
        event_type: str,
        payload: Mapping[str, Any] | BaseModel,
        max_retries: int | None = None,
    ) -> UUID:
        return await self.writer.enqueue(session, event_type, payload, max_retries=max_retries)

    def register_handlers(self, handlers: Mapping[str, OutboxEventHandler]) -> None:
        """Register handlers by type tag. Must happen before start()."""
        self.registry.register_many(handlers)

    def create_dispatcher(self) -> OutboxDispatcher:
        """
        Build an additional dispatcher sharing this outbox's registry and store.

        Each dispatcher gets its own notification connection. Useful for running
        several dispatch loops in one process.
        """
        listener = PostgresNotificationListener(
            self.settings.asyncpg_dsn, self.settings.NOTIFY_CHANNEL
        )
        return OutboxDispatcher(
            repository=self.repository,
            registry=self.registry,
            guard=self.guard,
            listener=listener,
            settings=self.settings,
            metrics=self.metrics,
        )

    @property
    def dispatcher(self) -> OutboxDispatcher | None:
        return self._dispatcher

    async def start(self) -> None:
        """Start the built-in dispatcher. Fails fast if no handlers are registered."""
        if self._dispatcher is None:
            self._dispatcher = self.create_dispatcher()
        await self._dispatcher.start()

    async def stop(self) -> None:
        if self._dispatcher is not None:
            await self._dispatcher.stop()

    async def get_event(self, event_id: UUID) -> OutboxEvent | None:
        """Return the persisted state of an event, or None if it does not exist."""
        return await self.repository.get_event_by_id(event_id)

    async def dispose(self) -> None:
        """Stop the dispatcher and release the engine's pooled connections."""
        await self.stop()
        await self.engine.dispose()
        logger.info("Outbox disposed")


def create_outbox(
    settings: OutboxSettings | None = None,
    engine: AsyncEngine | None = None,
    metrics: OutboxMetrics | None = None,
) -> Outbox:
    """
    Create an Outbox, building the engine from settings when none is given.

    Args:
        settings: Outbox settings (loaded from the environment when omitted)
        engine: Existing AsyncEngine shared with the application's own writes
        metrics: Optional Prometheus metrics collaborator
    """
    settings = settings or OutboxSettings()
    if engine is None:
        engine = create_outbox_engine(settings)
    return Outbox(engine, settings, metrics)
