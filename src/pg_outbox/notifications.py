"""
LISTEN/NOTIFY wake channel for idle dispatchers.

The listener holds its own asyncpg connection, separate from the engine's
pool, for as long as the dispatcher runs. Notifications are not durable: a
wait always has a timeout, and losing the connection only degrades the
dispatcher to timed polling until the next successful reconnect.
"""

from __future__ import annotations

import asyncio
from typing import Any

import asyncpg

from pg_outbox.logging_utils import create_service_logger

logger = create_service_logger("pg_outbox.notifications")


class PostgresNotificationListener:
    """Subscribes to a NOTIFY channel and exposes a timeout-bounded wait."""

    def __init__(self, dsn: str, channel: str) -> None:
        """
        Args:
            dsn: libpq DSN for a dedicated connection (see OutboxSettings.asyncpg_dsn)
            channel: Channel name, already validated as a plain identifier
        """
        self._dsn = dsn
        self._channel = channel
        self._connection: asyncpg.Connection | None = None
        self._notified = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    async def connect(self) -> None:
        """Open the dedicated connection and LISTEN on the channel."""
        if self.connected:
            return

        connection = await asyncpg.connect(self._dsn)
        try:
            await connection.add_listener(self._channel, self._on_notification)
            connection.add_termination_listener(self._on_termination)
        except Exception:
            await connection.close()
            raise

        self._connection = connection
        logger.info("Listening for outbox notifications", extra={"channel": self._channel})

    def _on_notification(
        self, connection: Any, pid: int, channel: str, payload: str
    ) -> None:
        self._notified.set()

    def _on_termination(self, connection: Any) -> None:
        if connection is not self._connection:
            # Late callback from a connection already replaced or closed
            return
        logger.warning(
            "Outbox notification connection terminated, falling back to polling",
            extra={"channel": self._channel},
        )
        self._connection = None
        # Release any waiter so the dispatcher re-polls and reconnects
        self._notified.set()

    def reset(self) -> None:
        self._notified.clear()

    def wake(self) -> None:
        self._notified.set()

    async def wait(self, timeout: float) -> bool:
        """
        Wait for a notification or the timeout, whichever comes first.

        Reconnects first if the connection was lost. A failed reconnect is
        logged and the call degrades to a plain timed sleep.

        Returns:
            True if woken by a notification, False on timeout
        """
        if not self.connected:
            try:
                await self.connect()
            except Exception as e:
                logger.warning(
                    "Could not establish notification connection, polling instead",
                    extra={"channel": self._channel, "error": str(e)},
                )

        try:
            await asyncio.wait_for(self._notified.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._notified.clear()
        return True

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None or connection.is_closed():
            return
        try:
            await connection.remove_listener(self._channel, self._on_notification)
        finally:
            await connection.close()
        logger.info("Stopped listening for outbox notifications", extra={"channel": self._channel})
