"""Dependency injection configuration for pg_outbox using Dishka."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from dishka import Provider, Scope, provide
from prometheus_client import REGISTRY, CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pg_outbox.config import OutboxSettings
from pg_outbox.database import create_outbox_engine, create_session_factory
from pg_outbox.dispatcher import OutboxDispatcher
from pg_outbox.idempotency import IdempotencyGuard
from pg_outbox.logging_utils import create_service_logger
from pg_outbox.monitoring import OutboxMetrics
from pg_outbox.notifications import PostgresNotificationListener
from pg_outbox.registry import HandlerRegistry
from pg_outbox.repository import PostgreSQLOutboxRepository
from pg_outbox.writer import OutboxWriter

logger = create_service_logger("pg_outbox.di")


class OutboxProvider(Provider):
    """
    Provider for the outbox components.

    Settings and the metrics registry can be overridden by passing them in,
    which tests use to point at a container database and a private registry.
    """

    def __init__(
        self,
        settings: OutboxSettings | None = None,
        metrics_registry: CollectorRegistry | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._metrics_registry = metrics_registry

    @provide(scope=Scope.APP)
    def provide_settings(self) -> OutboxSettings:
        """Provide outbox settings."""
        return self._settings or OutboxSettings()

    @provide(scope=Scope.APP)
    def provide_metrics_registry(self) -> CollectorRegistry:
        """Provide Prometheus metrics registry."""
        return self._metrics_registry or REGISTRY

    @provide(scope=Scope.APP)
    async def provide_database_engine(
        self, settings: OutboxSettings
    ) -> AsyncGenerator[AsyncEngine, None]:
        """Provide database engine, disposed when the container closes."""
        engine = create_outbox_engine(settings)
        try:
            yield engine  # type: ignore[misc]
        finally:
            await engine.dispose()
            logger.info("Outbox database engine disposed")

    @provide(scope=Scope.APP)
    def provide_session_factory(self, engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
        """Provide session factory for application writes alongside the outbox."""
        return create_session_factory(engine)

    @provide(scope=Scope.APP)
    def provide_metrics(self, registry: CollectorRegistry) -> OutboxMetrics:
        return OutboxMetrics(registry=registry)

    @provide(scope=Scope.APP)
    def provide_outbox_repository(self, engine: AsyncEngine) -> PostgreSQLOutboxRepository:
        """Provide the PostgreSQL outbox and idempotency store."""
        return PostgreSQLOutboxRepository(engine)

    @provide(scope=Scope.APP)
    def provide_handler_registry(self) -> HandlerRegistry:
        """Provide the shared handler registry. Register handlers before starting dispatchers."""
        return HandlerRegistry()

    @provide(scope=Scope.APP)
    def provide_idempotency_guard(
        self, repository: PostgreSQLOutboxRepository, metrics: OutboxMetrics
    ) -> IdempotencyGuard:
        return IdempotencyGuard(repository, metrics)

    @provide(scope=Scope.APP)
    def provide_outbox_writer(
        self,
        engine: AsyncEngine,
        repository: PostgreSQLOutboxRepository,
        settings: OutboxSettings,
        metrics: OutboxMetrics,
    ) -> OutboxWriter:
        """Provide the writer used inside business transactions."""
        return OutboxWriter(engine, repository, settings, metrics)

    @provide(scope=Scope.APP)
    async def provide_notification_listener(
        self, settings: OutboxSettings
    ) -> AsyncGenerator[PostgresNotificationListener, None]:
        """Provide the dedicated LISTEN connection wrapper, closed with the container."""
        listener = PostgresNotificationListener(settings.asyncpg_dsn, settings.NOTIFY_CHANNEL)
        try:
            yield listener  # type: ignore[misc]
        finally:
            await listener.close()

    @provide(scope=Scope.APP)
    async def provide_dispatcher(
        self,
        repository: PostgreSQLOutboxRepository,
        registry: HandlerRegistry,
        guard: IdempotencyGuard,
        listener: PostgresNotificationListener,
        settings: OutboxSettings,
        metrics: OutboxMetrics,
    ) -> AsyncGenerator[OutboxDispatcher, None]:
        """Provide the dispatcher. Not started; stopped when the container closes."""
        dispatcher = OutboxDispatcher(
            repository=repository,
            registry=registry,
            guard=guard,
            listener=listener,
            settings=settings,
            metrics=metrics,
        )
        try:
            yield dispatcher  # type: ignore[misc]
        finally:
            await dispatcher.stop()
