"""
Idempotency guard for handler side effects.

Delivery is at-least-once; wrapping a side effect in ``run_once`` makes that
particular effect at-most-once per key. The record inserted for a key acts as
a fencing token: it is committed before the operation runs and is never
removed, so a failed operation is not retried by the guard. Operations that
must eventually succeed need their own reconciliation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pg_outbox.logging_utils import create_service_logger

if TYPE_CHECKING:
    from pg_outbox.monitoring import OutboxMetrics
    from pg_outbox.protocols import GuardedOperation, IdempotencyStoreProtocol

logger = create_service_logger("pg_outbox.idempotency")


class IdempotencyGuard:
    """Runs an operation at most once per idempotency key."""

    def __init__(
        self,
        store: IdempotencyStoreProtocol,
        metrics: OutboxMetrics | None = None,
    ) -> None:
        self._store = store
        self._metrics = metrics

    async def run_once(self, key: str, operation: GuardedOperation) -> bool:
        """
        Execute operation unless a record for key already exists.

        Args:
            key: Idempotency key, typically the event id or "<event id>:<operation>"
            operation: Zero-argument coroutine function performing the side effect

        Returns:
            True if the operation ran, False if it was skipped as a duplicate

        Raises:
            Whatever operation raises. The record for key remains in place.
        """
        if not await self._store.try_acquire(key):
            logger.info(
                "Idempotency key already recorded, skipping guarded operation",
                extra={"idempotency_key": key, "action": "skipped_duplicate"},
            )
            if self._metrics is not None:
                self._metrics.idempotency_skips.inc()
            return False

        try:
            await operation()
        except Exception as e:
            logger.warning(
                "Guarded operation failed after its idempotency key was recorded",
                extra={
                    "idempotency_key": key,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise

        return True
