"""
Transactional outbox on PostgreSQL.

Events are written in the same transaction as the business data that
produced them and delivered to registered handlers at least once by one or
more dispatchers. Side effects wrapped with ``DeliveryContext.run_once`` run
at most once per idempotency key.
"""

from pg_outbox.config import OutboxSettings
from pg_outbox.context import DeliveryContext
from pg_outbox.database import create_outbox_engine, create_session_factory
from pg_outbox.dispatcher import OutboxDispatcher, compute_retry_delay
from pg_outbox.error_enums import ErrorCode
from pg_outbox.error_handling import OutboxError
from pg_outbox.idempotency import IdempotencyGuard
from pg_outbox.logging_utils import configure_outbox_logging, create_service_logger
from pg_outbox.models import OutboxEvent
from pg_outbox.models_db import Base, IdempotencyRecordDB, OutboxEventDB
from pg_outbox.monitoring import OutboxMetrics
from pg_outbox.notifications import PostgresNotificationListener
from pg_outbox.outbox import Outbox, create_outbox
from pg_outbox.protocols import (
    IdempotencyStoreProtocol,
    NotificationListenerProtocol,
    OutboxEventHandler,
    OutboxRepositoryProtocol,
)
from pg_outbox.registry import HandlerRegistry
from pg_outbox.repository import PostgreSQLOutboxRepository
from pg_outbox.status_enums import EventStatus
from pg_outbox.writer import OutboxWriter

__all__ = [
    "Base",
    "DeliveryContext",
    "ErrorCode",
    "EventStatus",
    "HandlerRegistry",
    "IdempotencyGuard",
    "IdempotencyRecordDB",
    "IdempotencyStoreProtocol",
    "NotificationListenerProtocol",
    "Outbox",
    "OutboxDispatcher",
    "OutboxError",
    "OutboxEvent",
    "OutboxEventDB",
    "OutboxEventHandler",
    "OutboxMetrics",
    "OutboxRepositoryProtocol",
    "OutboxSettings",
    "OutboxWriter",
    "PostgreSQLOutboxRepository",
    "PostgresNotificationListener",
    "compute_retry_delay",
    "configure_outbox_logging",
    "create_outbox",
    "create_outbox_engine",
    "create_service_logger",
    "create_session_factory",
]
