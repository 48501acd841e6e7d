"""
Engine and session factory construction for the outbox store.

Pool sizing is left to the embedding application; callers that already own
an AsyncEngine can pass it straight to the outbox components.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pg_outbox.config import OutboxSettings


def create_outbox_engine(settings: OutboxSettings, **engine_kwargs: Any) -> AsyncEngine:
    """
    Create an AsyncEngine whose connections carry the configured statement timeout.

    Args:
        settings: Outbox settings providing DATABASE_URL and STATEMENT_TIMEOUT_MS
        **engine_kwargs: Passed through to create_async_engine (pool options etc.)
    """
    connect_args: dict[str, Any] = dict(engine_kwargs.pop("connect_args", {}))
    if settings.STATEMENT_TIMEOUT_MS:
        server_settings = dict(connect_args.get("server_settings", {}))
        server_settings.setdefault("statement_timeout", str(settings.STATEMENT_TIMEOUT_MS))
        connect_args["server_settings"] = server_settings

    engine_kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(settings.DATABASE_URL, connect_args=connect_args, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
