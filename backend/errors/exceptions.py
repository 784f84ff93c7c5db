"""
Custom exception hierarchy for Parley.

All exceptions inherit from ParleyError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the user can retry/fix the issue
- context: Additional key-value pairs for debugging

Only AdmissionRejected and LLMError are ever surfaced to the client as an
error event. The others are absorbed into tool results, conversational
text or log lines.
"""

from typing import Any, Optional
from .codes import ErrorCode


class ParleyError(Exception):
    """Base exception for all Parley errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ValidationError(ParleyError):
    """Error during input validation."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        if error_type == "type":
            code = ErrorCode.VALIDATION_INVALID_TYPE
        elif error_type == "range":
            code = ErrorCode.VALIDATION_OUT_OF_RANGE
        elif error_type == "format":
            code = ErrorCode.VALIDATION_INVALID_FORMAT
        elif error_type == "unknown":
            code = ErrorCode.VALIDATION_UNKNOWN_PARAM
        else:
            code = ErrorCode.VALIDATION_MISSING_PARAM

        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received is not None:
            ctx["received"] = received
        super().__init__(message, details, code=code, **ctx)


class NotFoundError(ParleyError):
    """Error when a required resource is not found."""

    code = ErrorCode.NOT_FOUND_RESOURCE
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        # Set appropriate code based on resource type
        if resource_type == "location":
            code = ErrorCode.NOT_FOUND_LOCATION
        elif resource_type == "symbol":
            code = ErrorCode.NOT_FOUND_SYMBOL
        elif resource_type == "chat":
            code = ErrorCode.NOT_FOUND_CHAT
        else:
            code = ErrorCode.NOT_FOUND_RESOURCE

        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, code=code, **ctx)


class LLMError(ParleyError):
    """Upstream inference failure. Terminal for the turn, not the session."""

    code = ErrorCode.LLM_UNAVAILABLE
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        # Set appropriate code based on error type
        if error_type == "timeout":
            code = ErrorCode.LLM_TIMEOUT
        elif error_type == "invalid":
            code = ErrorCode.LLM_RESPONSE_INVALID
        elif error_type == "circuit_open":
            code = ErrorCode.LLM_CIRCUIT_OPEN
        else:
            code = ErrorCode.LLM_UNAVAILABLE

        ctx = {**context}
        if model:
            ctx["model"] = model
        super().__init__(message, details, code=code, **ctx)


# The taxonomy names upstream inference failures ModelError
ModelError = LLMError


class ExternalServiceError(ParleyError):
    """Error with external services (SearXNG, weather lookup, etc.)."""

    code = ErrorCode.EXTERNAL_NETWORK_ERROR
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        # Set appropriate code based on service
        if service == "searxng":
            code = ErrorCode.EXTERNAL_SEARCH_FAILED
        elif service == "weather":
            code = ErrorCode.EXTERNAL_WEATHER_FAILED
        else:
            code = ErrorCode.EXTERNAL_NETWORK_ERROR

        ctx = {**context}
        if service:
            ctx["service"] = service
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, details, code=code, **ctx)


class AdmissionRejected(ParleyError):
    """Rate limit exceeded for an identity."""

    code = ErrorCode.RATE_LIMIT_EXCEEDED
    recoverable = True

    def __init__(
        self,
        message: str,
        retry_after: int,
        window: str,
        details: Optional[str] = None,
        **context: Any,
    ):
        self.retry_after = retry_after
        self.window = window
        super().__init__(message, details, retry_after=retry_after, window=window, **context)


class AugmentationFailure(ParleyError):
    """Semantic memory unreachable or timed out. Always recovered locally."""

    code = ErrorCode.MEMORY_UNAVAILABLE
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        code = ErrorCode.MEMORY_TIMEOUT if error_type == "timeout" else ErrorCode.MEMORY_UNAVAILABLE
        super().__init__(message, details, code=code, **context)


class ToolExecutionError(ParleyError):
    """Tool could not run or failed while running."""

    code = ErrorCode.TOOL_EXECUTION_FAILED
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        tool: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        if error_type == "unknown":
            code = ErrorCode.TOOL_UNKNOWN
        elif error_type == "disabled":
            code = ErrorCode.TOOL_DISABLED
        elif error_type == "invalid_args":
            code = ErrorCode.TOOL_INVALID_ARGS
        elif error_type == "timeout":
            code = ErrorCode.TOOL_TIMEOUT
        else:
            code = ErrorCode.TOOL_EXECUTION_FAILED

        ctx = {**context}
        if tool:
            ctx["tool"] = tool
        super().__init__(message, details, code=code, **ctx)


class ToolCallLoopExceeded(ParleyError):
    """Model kept requesting tools past the round ceiling."""

    code = ErrorCode.TOOL_LOOP_EXCEEDED
    recoverable = True

    def __init__(self, message: str, rounds: int, details: Optional[str] = None, **context: Any):
        self.rounds = rounds
        super().__init__(message, details, rounds=rounds, **context)


class SessionInvariantViolation(ParleyError):
    """A second turn arrived while one is still in flight."""

    code = ErrorCode.SESSION_TURN_IN_FLIGHT
    recoverable = True

    def __init__(self, message: str, session_id: Optional[str] = None, details: Optional[str] = None, **context: Any):
        ctx = {**context}
        if session_id:
            ctx["session_id"] = session_id
        super().__init__(message, details, **ctx)


class ShutdownTimeout(ParleyError):
    """Grace period elapsed with turns still in flight."""

    code = ErrorCode.SHUTDOWN_TIMEOUT
    recoverable = False

    def __init__(self, message: str, pending: int = 0, details: Optional[str] = None, **context: Any):
        self.pending = pending
        super().__init__(message, details, pending=pending, **context)
