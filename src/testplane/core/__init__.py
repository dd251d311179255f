"""Core module exports."""

from testplane.core.errors import (
    ConfigError,
    ErrorCode,
    LifecycleError,
    StoreError,
    TestPlaneError,
)
from testplane.core.logging import (
    clear_request_id,
    configure_logging,
    get_logger,
    get_request_id,
    set_request_id,
)
from testplane.core.messages import Message, has_errors

__all__ = [
    # Errors
    "TestPlaneError",
    "ConfigError",
    "ErrorCode",
    "LifecycleError",
    "StoreError",
    # Logging
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "get_request_id",
    "set_request_id",
    # Messages
    "Message",
    "has_errors",
]
