"""
Factory functions that build an ErrorDetail and raise OutboxError.

Keyword arguments beyond the named parameters are stored in
``ErrorDetail.details`` so call sites can attach diagnostic context.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, NoReturn
from uuid import UUID

from opentelemetry import trace

from pg_outbox.error_enums import ErrorCode
from pg_outbox.error_handling.outbox_error import OutboxError
from pg_outbox.error_models import ErrorDetail

# Used when an error is not tied to a particular event
NIL_CORRELATION_ID = UUID(int=0)


def create_error_detail(
    error_code: ErrorCode,
    message: str,
    service: str,
    operation: str,
    correlation_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> ErrorDetail:
    """Build an ErrorDetail enriched with the current trace context."""
    trace_id = None
    span_id = None
    span = trace.get_current_span()
    if span is not None:
        span_context = span.get_span_context()
        if span_context.is_valid:
            trace_id = format(span_context.trace_id, "032x")
            span_id = format(span_context.span_id, "016x")

    return ErrorDetail(
        error_code=error_code,
        message=message,
        correlation_id=correlation_id or NIL_CORRELATION_ID,
        timestamp=datetime.now(UTC),
        service=service,
        operation=operation,
        details=details or {},
        trace_id=trace_id,
        span_id=span_id,
    )


def _raise(
    error_code: ErrorCode,
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID | None,
    details: dict[str, Any],
) -> NoReturn:
    raise OutboxError(
        create_error_detail(
            error_code=error_code,
            message=message,
            service=service,
            operation=operation,
            correlation_id=correlation_id,
            details=details,
        )
    )


def raise_external_service_error(
    service: str,
    operation: str,
    external_service: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    """Raise for failures of a collaborator outside the library (the database)."""
    details = {"external_service": external_service, **additional_context}
    _raise(
        ErrorCode.EXTERNAL_SERVICE_ERROR, service, operation, message, correlation_id, details
    )


def raise_configuration_error(
    service: str,
    operation: str,
    config_key: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    details = {"config_key": config_key, **additional_context}
    _raise(ErrorCode.CONFIGURATION_ERROR, service, operation, message, correlation_id, details)


def raise_invalid_request(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        ErrorCode.INVALID_REQUEST, service, operation, message, correlation_id, additional_context
    )


def raise_handler_not_found(
    service: str,
    operation: str,
    event_type: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    details = {"event_type": event_type, **additional_context}
    _raise(
        ErrorCode.HANDLER_NOT_FOUND,
        service,
        operation,
        f"No handler registered for event type '{event_type}'",
        correlation_id,
        details,
    )


def raise_handler_registration_error(
    service: str,
    operation: str,
    message: str,
    correlation_id: UUID | None = None,
    **additional_context: Any,
) -> NoReturn:
    _raise(
        ErrorCode.HANDLER_REGISTRATION_ERROR,
        service,
        operation,
        message,
        correlation_id,
        additional_context,
    )
