"""
Outbox dispatcher: claim, dispatch and reconcile loop.

Each dispatcher runs one logical loop. Any number of dispatchers may run
against the same database; they never coordinate directly. Claims use SKIP
LOCKED row locks, handlers are cancelled before their claim lease runs out,
and reconcile writes only apply while the claim that produced them is held.
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import TYPE_CHECKING

from pg_outbox.context import DeliveryContext
from pg_outbox.error_handling import raise_configuration_error
from pg_outbox.logging_utils import bind_event_context, clear_event_context, create_service_logger
from pg_outbox.status_enums import EventStatus

if TYPE_CHECKING:
    from pg_outbox.config import OutboxSettings
    from pg_outbox.idempotency import IdempotencyGuard
    from pg_outbox.models import OutboxEvent
    from pg_outbox.monitoring import OutboxMetrics
    from pg_outbox.protocols import NotificationListenerProtocol, OutboxRepositoryProtocol
    from pg_outbox.registry import HandlerRegistry

logger = create_service_logger("pg_outbox.dispatcher")

SERVICE_NAME = "pg_outbox"
LEASE_EXPIRED_ERROR = "processing lease expired before the event was reconciled"


def compute_retry_delay(base_delay_seconds: float, retry_count: int) -> timedelta:
    """
    Exponential backoff: base * 2 ** retry_count.

    Args:
        base_delay_seconds: Configured base delay
        retry_count: Attempt counter including the failure being scheduled
    """
    return timedelta(seconds=base_delay_seconds * (2**retry_count))


class OutboxDispatcher:
    """
    Delivers outbox events to registered handlers at least once.

    Lifecycle: register every handler, then ``start()`` (background task) or
    ``await run()`` (foreground). ``stop()`` is honored between claim cycles
    so an in-flight delivery always finishes and is reconciled.
    """

    def __init__(
        self,
        repository: OutboxRepositoryProtocol,
        registry: HandlerRegistry,
        guard: IdempotencyGuard,
        listener: NotificationListenerProtocol,
        settings: OutboxSettings,
        metrics: OutboxMetrics | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.guard = guard
        self.listener = listener
        self.settings = settings
        self._metrics = metrics
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_recovery: float | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Validate the registry and start the dispatch loop as a background task."""
        if self._task is not None and not self._task.done():
            logger.warning("Outbox dispatcher already running")
            return

        self._prepare()
        self._task = asyncio.create_task(self._loop())
        logger.info("Outbox dispatcher started")

    async def stop(self) -> None:
        """Stop the loop after the current cycle and release the listener."""
        self._running = False
        self.listener.wake()
        if self._task is None:
            return

        task, self._task = self._task, None
        try:
            await asyncio.wait_for(
                asyncio.shield(task), timeout=self.settings.SHUTDOWN_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Outbox dispatcher did not finish in time, cancelling",
                extra={"shutdown_timeout": self.settings.SHUTDOWN_TIMEOUT_SECONDS},
            )
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("Outbox dispatcher stopped")

    async def run(self) -> None:
        """Run the dispatch loop in the current task until stop() is called."""
        self._prepare()
        await self._loop()

    def _prepare(self) -> None:
        if len(self.registry) == 0:
            raise_configuration_error(
                service=SERVICE_NAME,
                operation="start",
                config_key="handlers",
                message="Cannot start the outbox dispatcher without registered handlers",
            )
        self.registry.freeze()
        self._running = True

    async def _loop(self) -> None:
        logger.info(
            "Outbox dispatch loop starting",
            extra={
                "event_types": self.registry.event_types,
                "idle_wait_timeout": self.settings.IDLE_WAIT_TIMEOUT_SECONDS,
                "base_retry_delay": self.settings.BASE_RETRY_DELAY_SECONDS,
                "channel": self.settings.NOTIFY_CHANNEL,
            },
        )

        try:
            await self.listener.connect()
        except Exception as e:
            logger.warning(
                "Notification listener unavailable at startup, polling only",
                extra={"error": str(e)},
            )

        try:
            while self._running:
                self.listener.reset()
                try:
                    await self._recover_if_due()
                    processed = await self.process_next()
                except Exception as e:
                    logger.error(
                        "Error in outbox dispatch loop",
                        extra={"error": str(e), "error_type": type(e).__name__},
                        exc_info=True,
                    )
                    if self._running:
                        await self.listener.wait(self.settings.ERROR_RETRY_INTERVAL_SECONDS)
                    continue

                if not processed and self._running:
                    await self.listener.wait(self.settings.IDLE_WAIT_TIMEOUT_SECONDS)
        finally:
            self._running = False
            await self.listener.close()
            logger.info("Outbox dispatch loop exited")

    async def _recover_if_due(self) -> None:
        now = time.monotonic()
        if (
            self._last_recovery is not None
            and now - self._last_recovery < self.settings.RECOVERY_INTERVAL_SECONDS
        ):
            return

        self._last_recovery = now
        requeued, failed = await self.repository.release_expired_claims(LEASE_EXPIRED_ERROR)
        if requeued or failed:
            logger.warning(
                "Released expired outbox claims",
                extra={"requeued": requeued, "failed": failed},
            )
            if self._metrics is not None:
                self._metrics.events_recovered.labels(outcome="requeued").inc(requeued)
                self._metrics.events_recovered.labels(outcome="failed").inc(failed)

    async def process_next(self) -> bool:
        """
        Run one claim, dispatch and reconcile cycle.

        Returns:
            True if an event was claimed, False if nothing was claimable

        Raises:
            OutboxError: if the store fails while claiming or reconciling
        """
        event = await self.repository.claim_next_event(
            timedelta(seconds=self.settings.PROCESSING_LEASE_SECONDS)
        )
        if event is None:
            return False

        if self._metrics is not None:
            self._metrics.events_claimed.labels(event_type=event.type).inc()

        bind_event_context(event)
        try:
            error = await self._dispatch(event)
            if error is None:
                await self._complete(event)
            else:
                await self._fail(event, error)
        finally:
            clear_event_context()
        return True

    async def _dispatch(self, event: OutboxEvent) -> str | None:
        """Invoke the handler. Returns None on success or the error text on failure."""
        started = time.perf_counter()
        timeout = asyncio.timeout(self.settings.HANDLER_TIMEOUT_SECONDS)
        try:
            handler = self.registry.resolve(event.type, event_id=event.id)
            async with timeout:
                await handler(event, DeliveryContext(event, self.guard))
        except TimeoutError as e:
            if not timeout.expired():
                return self._handler_failed(event, e)
            logger.warning(
                "Outbox handler timed out, cancelled",
                extra={
                    "event_id": str(event.id),
                    "event_type": event.type,
                    "handler_timeout": self.settings.HANDLER_TIMEOUT_SECONDS,
                },
            )
            return (
                "TimeoutError: handler did not finish within "
                f"{self.settings.HANDLER_TIMEOUT_SECONDS}s"
            )
        except Exception as e:
            return self._handler_failed(event, e)
        finally:
            if self._metrics is not None:
                self._metrics.handler_duration.labels(event_type=event.type).observe(
                    time.perf_counter() - started
                )
        return None

    def _handler_failed(self, event: OutboxEvent, e: Exception) -> str:
        logger.warning(
            "Outbox handler failed",
            extra={
                "event_id": str(event.id),
                "event_type": event.type,
                "retry_count": event.retry_count,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        return f"{type(e).__name__}: {e}"

    async def _complete(self, event: OutboxEvent) -> None:
        if not await self.repository.mark_event_sent(event.id, event.next_run_at):
            self._claim_lost(event, EventStatus.SENT)
            return
        if self._metrics is not None:
            self._metrics.events_sent.labels(event_type=event.type).inc()
        logger.info(
            "Outbox event delivered",
            extra={
                "event_id": str(event.id),
                "event_type": event.type,
                "retry_count": event.retry_count,
            },
        )

    async def _fail(self, event: OutboxEvent, error: str) -> None:
        retry_count = event.retry_count + 1
        error = error[: self.settings.LAST_ERROR_MAX_LENGTH]

        if retry_count > event.max_retries:
            if not await self.repository.mark_event_failed(
                event.id, event.next_run_at, retry_count, error
            ):
                self._claim_lost(event, EventStatus.FAILED)
                return
            if self._metrics is not None:
                self._metrics.events_failed.labels(event_type=event.type).inc()
            logger.error(
                "Outbox event exceeded max retries, marked as failed",
                extra={
                    "event_id": str(event.id),
                    "event_type": event.type,
                    "retry_count": retry_count,
                    "max_retries": event.max_retries,
                    "last_error": error,
                },
            )
            return

        retry_delay = compute_retry_delay(self.settings.BASE_RETRY_DELAY_SECONDS, retry_count)
        if not await self.repository.schedule_retry(
            event.id, event.next_run_at, retry_count, error, retry_delay
        ):
            self._claim_lost(event, EventStatus.PENDING)
            return
        if self._metrics is not None:
            self._metrics.events_retried.labels(event_type=event.type).inc()
        logger.warning(
            "Outbox event scheduled for retry",
            extra={
                "event_id": str(event.id),
                "event_type": event.type,
                "retry_count": retry_count,
                "max_retries": event.max_retries,
                "retry_delay_seconds": retry_delay.total_seconds(),
            },
        )

    def _claim_lost(self, event: OutboxEvent, outcome: EventStatus) -> None:
        # Recovery already counted this attempt; the row belongs to whoever holds it now
        logger.warning(
            "Outbox claim lost before reconcile, outcome discarded",
            extra={
                "event_id": str(event.id),
                "event_type": event.type,
                "discarded_status": outcome.value,
                "discarded_terminal": outcome.is_terminal,
                "claimed_until": event.next_run_at.isoformat(),
            },
        )
        if self._metrics is not None:
            self._metrics.reconcile_skipped.labels(event_type=event.type).inc()
