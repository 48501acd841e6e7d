"""Capability object handed to handlers alongside the event."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pg_outbox.idempotency import IdempotencyGuard
    from pg_outbox.models import OutboxEvent
    from pg_outbox.protocols import GuardedOperation


class DeliveryContext:
    """
    Per-delivery capabilities for a handler.

    ``run_once`` is the idempotency guard pre-bound to the event being
    delivered: without a key it guards on the event id, with a key it guards
    on ``"<event id>:<key>"`` so one handler can protect several side effects.
    """

    def __init__(self, event: OutboxEvent, guard: IdempotencyGuard) -> None:
        self.event = event
        self._guard = guard

    def idempotency_key(self, key: str | None = None) -> str:
        if key is None:
            return str(self.event.id)
        return f"{self.event.id}:{key}"

    async def run_once(self, operation: GuardedOperation, *, key: str | None = None) -> bool:
        return await self._guard.run_once(self.idempotency_key(key), operation)
