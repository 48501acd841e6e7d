"""
pg_outbox.error_enums - Centralized error code definitions.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Dispatch-specific
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"
    HANDLER_REGISTRATION_ERROR = "HANDLER_REGISTRATION_ERROR"
