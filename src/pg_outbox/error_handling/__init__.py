"""Error handling utilities for the outbox library."""

from pg_outbox.error_handling.factories import (
    NIL_CORRELATION_ID,
    create_error_detail,
    raise_configuration_error,
    raise_external_service_error,
    raise_handler_not_found,
    raise_handler_registration_error,
    raise_invalid_request,
)
from pg_outbox.error_handling.outbox_error import OutboxError

__all__ = [
    "NIL_CORRELATION_ID",
    "OutboxError",
    "create_error_detail",
    "raise_configuration_error",
    "raise_external_service_error",
    "raise_handler_not_found",
    "raise_handler_registration_error",
    "raise_invalid_request",
]
