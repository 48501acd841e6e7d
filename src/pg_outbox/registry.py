"""
Handler registry mapping event type tags to handlers.

Registration is a setup-time activity: the dispatcher freezes the registry
when it starts, and any later registration is rejected.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING

from pg_outbox.error_handling import (
    raise_handler_not_found,
    raise_handler_registration_error,
)
from pg_outbox.logging_utils import create_service_logger

if TYPE_CHECKING:
    from uuid import UUID

    from pg_outbox.protocols import OutboxEventHandler

logger = create_service_logger("pg_outbox.registry")

SERVICE_NAME = "pg_outbox"


class HandlerRegistry:
    """Type tag to handler lookup used by the dispatcher."""

    def __init__(self, handlers: Mapping[str, OutboxEventHandler] | None = None) -> None:
        self._handlers: dict[str, OutboxEventHandler] = {}
        self._frozen = False
        if handlers:
            self.register_many(handlers)

    def register(self, event_type: str, handler: OutboxEventHandler) -> None:
        """
        Register the handler for an event type.

        Raises:
            OutboxError: HANDLER_REGISTRATION_ERROR if the registry is frozen,
                the type tag is empty, the handler is not callable, or another
                handler is already registered for the type
        """
        if self._frozen:
            raise_handler_registration_error(
                service=SERVICE_NAME,
                operation="register",
                message="Handlers must be registered before the dispatcher starts",
                event_type=event_type,
            )
        if not event_type:
            raise_handler_registration_error(
                service=SERVICE_NAME,
                operation="register",
                message="Event type tag must be a non-empty string",
            )
        if not callable(handler):
            raise_handler_registration_error(
                service=SERVICE_NAME,
                operation="register",
                message=f"Handler for '{event_type}' is not callable",
                event_type=event_type,
            )
        if event_type in self._handlers:
            raise_handler_registration_error(
                service=SERVICE_NAME,
                operation="register",
                message=f"A handler is already registered for '{event_type}'",
                event_type=event_type,
            )

        self._handlers[event_type] = handler
        logger.debug("Registered outbox handler", extra={"event_type": event_type})

    def register_many(self, handlers: Mapping[str, OutboxEventHandler]) -> None:
        for event_type, handler in handlers.items():
            self.register(event_type, handler)

    def resolve(self, event_type: str, event_id: UUID | None = None) -> OutboxEventHandler:
        """
        Return the handler for event_type.

        Raises:
            OutboxError: HANDLER_NOT_FOUND when no handler is registered
        """
        handler = self._handlers.get(event_type)
        if handler is None:
            raise_handler_not_found(
                service=SERVICE_NAME,
                operation="resolve",
                event_type=event_type,
                correlation_id=event_id,
            )
        return handler

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)
