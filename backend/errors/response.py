"""
Standard error response builders for Parley.

Provides consistent response formats for tool results and WebSocket
error events.
"""

from typing import Optional
from .codes import ErrorCode
from .exceptions import AdmissionRejected, ParleyError


def error_response(error: ParleyError | Exception, tool: Optional[str] = None, include_context: bool = True) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        tool: Optional tool name for context
        include_context: Whether to include the context dict (disable for privacy)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import NotFoundError, error_response
        >>> err = NotFoundError("Location not found", resource_type="location")
        >>> error_response(err, tool="get_weather")
        {
            "success": False,
            "error": {
                "code": "NOT_FOUND_LOCATION",
                "message": "Location not found",
                "details": None,
                "tool": "get_weather",
                "recoverable": True,
                "context": {"resource_type": "location"}
            }
        }
    """
    if isinstance(error, ParleyError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "tool": tool,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    # Unexpected exceptions never leak their text to the model
    return {
        "success": False,
        "error": {
            "code": ErrorCode.INTERNAL_UNEXPECTED.value,
            "message": "The tool failed unexpectedly",
            "details": None,
            "tool": tool,
            "recoverable": False,
            "context": None,
        },
    }


def error_event(error: ParleyError | Exception, chat_id: Optional[str] = None) -> dict:
    """Build the payload of an ``error`` WebSocket event.

    Rate-limit rejections carry ``retryAfter`` (seconds) and ``window``.
    """
    if isinstance(error, ParleyError):
        payload = {
            "chatId": chat_id,
            "code": error.code.value,
            "message": error.message,
            "recoverable": error.recoverable,
        }
        if isinstance(error, AdmissionRejected):
            payload["retryAfter"] = error.retry_after
            payload["window"] = error.window
        return payload

    return {
        "chatId": chat_id,
        "code": ErrorCode.INTERNAL_UNEXPECTED.value,
        "message": "An unexpected error occurred",
        "recoverable": False,
    }
