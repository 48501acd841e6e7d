"""
Integration tests for the outbox writer.
# IMPORTANT: This is an integration test that requires PostgreSQL.

Covers atomicity of enqueue with the caller's transaction, the
open-transaction precondition and commit-only wake-up notifications.
"""

from __future__ import annotations

from datetime import datetime

import pytest
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from pg_outbox.database import create_session_factory
from pg_outbox.error_enums import ErrorCode
from pg_outbox.error_handling import OutboxError
from pg_outbox.models_db import OutboxEventDB
from pg_outbox.notifications import PostgresNotificationListener
from pg_outbox.outbox import Outbox
from pg_outbox.status_enums import EventStatus


class OrderCreated(BaseModel):
    order_id: int
    placed_at: datetime


async def count_events(engine: AsyncEngine) -> int:
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(OutboxEventDB))).scalar_one()


@pytest.mark.integration
@pytest.mark.docker
class TestOutboxWriterIntegration:
    """Transactional enqueue against a real PostgreSQL."""

    @pytest.fixture(autouse=True)
    async def orders_table(self, test_engine: AsyncEngine) -> None:
        async with test_engine.begin() as conn:
            await conn.execute(text("CREATE TABLE IF NOT EXISTS orders (id INTEGER PRIMARY KEY)"))
            await conn.execute(text("TRUNCATE TABLE orders"))

    @pytest.mark.asyncio
    async def test_committed_enqueue_is_visible(
        self, outbox: Outbox, test_engine: AsyncEngine
    ) -> None:
        # Act
        async with outbox.transaction() as session:
            await session.execute(text("INSERT INTO orders (id) VALUES (1)"))
            event_id = await outbox.enqueue(session, "order.created", {"id": 1})

        # Assert
        event = await outbox.get_event(event_id)
        assert event is not None
        assert event.type == "order.created"
        assert event.payload == {"id": 1}
        assert event.status is EventStatus.PENDING
        assert event.retry_count == 0
        assert event.max_retries == 3
        assert event.processed_at is None
        assert event.next_run_at == event.created_at

    @pytest.mark.asyncio
    async def test_rolled_back_enqueue_leaves_no_trace(
        self, outbox: Outbox, test_engine: AsyncEngine
    ) -> None:
        # Act
        with pytest.raises(RuntimeError, match="insufficient stock"):
            async with outbox.transaction() as session:
                await session.execute(text("INSERT INTO orders (id) VALUES (2)"))
                await outbox.enqueue(session, "order.created", {"id": 2})
                raise RuntimeError("insufficient stock")

        # Assert - neither the business row nor the event exists
        assert await count_events(test_engine) == 0
        async with test_engine.connect() as conn:
            orders = (await conn.execute(text("SELECT count(*) FROM orders"))).scalar_one()
        assert orders == 0

    @pytest.mark.asyncio
    async def test_with_transaction_returns_body_result(
        self, outbox: Outbox, test_engine: AsyncEngine
    ) -> None:
        async def place_order(session: AsyncSession) -> object:
            await session.execute(text("INSERT INTO orders (id) VALUES (3)"))
            return await outbox.enqueue(
                session,
                "order.created",
                OrderCreated(order_id=3, placed_at=datetime(2024, 5, 1, 12, 0)),
                max_retries=1,
            )

        event_id = await outbox.with_transaction(place_order)

        event = await outbox.get_event(event_id)  # type: ignore[arg-type]
        assert event is not None
        assert event.payload == {"order_id": 3, "placed_at": "2024-05-01T12:00:00"}
        assert event.max_retries == 1

    @pytest.mark.asyncio
    async def test_enqueue_outside_transaction_rejected(
        self, outbox: Outbox, test_engine: AsyncEngine
    ) -> None:
        async with create_session_factory(test_engine)() as session:
            with pytest.raises(OutboxError) as exc_info:
                await outbox.enqueue(session, "order.created", {"id": 4})

        assert exc_info.value.error_code == ErrorCode.INVALID_REQUEST.value
        assert await count_events(test_engine) == 0

    @pytest.mark.asyncio
    async def test_store_failure_is_wrapped_and_rolled_back(
        self, outbox: Outbox, test_engine: AsyncEngine
    ) -> None:
        with pytest.raises(OutboxError) as exc_info:
            async with outbox.transaction() as session:
                await session.execute(text("INSERT INTO orders (id) VALUES (5)"))
                await outbox.enqueue(session, "order.created", {"not_json": object()})

        assert exc_info.value.error_code == ErrorCode.EXTERNAL_SERVICE_ERROR.value
        assert await count_events(test_engine) == 0

    @pytest.mark.asyncio
    async def test_notification_fires_only_after_commit(self, outbox: Outbox) -> None:
        listener = PostgresNotificationListener(
            outbox.settings.asyncpg_dsn, outbox.settings.NOTIFY_CHANNEL
        )
        await listener.connect()
        try:
            listener.reset()
            async with outbox.transaction() as session:
                await outbox.enqueue(session, "order.created", {"id": 6})
                # Uncommitted: nothing delivered yet
                assert await listener.wait(0.3) is False

            assert await listener.wait(5.0) is True
        finally:
            await listener.close()

        assert listener.connected is False

    @pytest.mark.asyncio
    async def test_rolled_back_enqueue_does_not_notify(self, outbox: Outbox) -> None:
        listener = PostgresNotificationListener(
            outbox.settings.asyncpg_dsn, outbox.settings.NOTIFY_CHANNEL
        )
        await listener.connect()
        try:
            with pytest.raises(RuntimeError):
                async with outbox.transaction() as session:
                    await outbox.enqueue(session, "order.created", {"id": 7})
                    raise RuntimeError("abort")

            assert await listener.wait(0.5) is False
        finally:
            await listener.close()
