"""
Fixtures for integration tests against a real PostgreSQL.

One postgres:15 container is shared by the whole session; every test gets a
fresh engine and truncated tables.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Generator
from typing import Any

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from testcontainers.postgres import PostgresContainer

from pg_outbox.config import OutboxSettings
from pg_outbox.database import create_outbox_engine
from pg_outbox.models_db import Base
from pg_outbox.monitoring import OutboxMetrics
from pg_outbox.outbox import Outbox


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, Any, None]:
    """Start PostgreSQL test container for integration tests."""
    container = PostgresContainer("postgres:15")
    container.start()
    yield container
    container.stop()


@pytest.fixture
def outbox_settings(postgres_container: PostgresContainer) -> OutboxSettings:
    """Settings pointing at the container, with fast retry and idle intervals."""
    connection_url = postgres_container.get_connection_url()
    # Testcontainers returns psycopg2 URLs, we need asyncpg
    if "psycopg2" in connection_url:
        async_url = connection_url.replace("psycopg2", "asyncpg")
    else:
        parts = connection_url.split("://", 1)
        async_url = f"postgresql+asyncpg://{parts[1]}"

    return OutboxSettings(
        _env_file=None,
        DATABASE_URL=async_url,
        BASE_RETRY_DELAY_SECONDS=0.01,
        MAX_RETRIES=3,
        IDLE_WAIT_TIMEOUT_SECONDS=0.2,
        ERROR_RETRY_INTERVAL_SECONDS=0.1,
        SHUTDOWN_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
async def test_engine(outbox_settings: OutboxSettings) -> AsyncIterator[AsyncEngine]:
    """Create engine connected to the test container with a clean schema."""
    engine = create_outbox_engine(outbox_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text("TRUNCATE TABLE outbox_events, outbox_idempotency"))

    yield engine
    await engine.dispose()


@pytest.fixture
async def outbox(test_engine: AsyncEngine, outbox_settings: OutboxSettings) -> AsyncIterator[Outbox]:
    instance = Outbox(
        test_engine, outbox_settings, OutboxMetrics(registry=CollectorRegistry())
    )
    yield instance
    await instance.stop()
