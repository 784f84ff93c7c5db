"""
Parley Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the application.

Usage:
    from errors import (
        ErrorCode,
        ParleyError,
        AdmissionRejected,
        ToolExecutionError,
        error_response,
        error_event,
        handle_async_tool_errors,
        log_error,
    )

Example:
    from errors import handle_async_tool_errors, NotFoundError

    @handle_async_tool_errors("get_weather")
    async def get_weather(location: str) -> dict:
        place = await geocode(location)
        if place is None:
            raise NotFoundError(
                f"Could not find a place called '{location}'",
                resource_type="location",
                resource_id=location,
            )
        ...
"""

from .codes import ErrorCode
from .exceptions import (
    ParleyError,
    ValidationError,
    NotFoundError,
    LLMError,
    ModelError,
    ExternalServiceError,
    AdmissionRejected,
    AugmentationFailure,
    ToolExecutionError,
    ToolCallLoopExceeded,
    SessionInvariantViolation,
    ShutdownTimeout,
)
from .response import (
    error_response,
    error_event,
)
from .handlers import (
    handle_tool_errors,
    handle_async_tool_errors,
    log_error,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "ParleyError",
    "ValidationError",
    "NotFoundError",
    "LLMError",
    "ModelError",
    "ExternalServiceError",
    "AdmissionRejected",
    "AugmentationFailure",
    "ToolExecutionError",
    "ToolCallLoopExceeded",
    "SessionInvariantViolation",
    "ShutdownTimeout",
    # Response builders
    "error_response",
    "error_event",
    # Decorators
    "handle_tool_errors",
    "handle_async_tool_errors",
    "log_error",
]
