"""
Error codes for Parley.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across error responses, tool results and
WebSocket error events.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Parley.

    Categories:
    - RATE_LIMIT_*: Admission control rejections
    - VALIDATION_*: Input validation errors
    - NOT_FOUND_*: Resource not found errors
    - TOOL_*: Tool catalog and execution errors
    - MEMORY_*: Semantic memory errors
    - LLM_*: Language model errors
    - EXTERNAL_*: External service errors
    - SESSION_*: Session state errors
    - SHUTDOWN_*: Lifecycle errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Admission control
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_TYPE = "VALIDATION_INVALID_TYPE"
    VALIDATION_OUT_OF_RANGE = "VALIDATION_OUT_OF_RANGE"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"
    VALIDATION_UNKNOWN_PARAM = "VALIDATION_UNKNOWN_PARAM"

    # Not found errors (missing resources)
    NOT_FOUND_LOCATION = "NOT_FOUND_LOCATION"
    NOT_FOUND_SYMBOL = "NOT_FOUND_SYMBOL"
    NOT_FOUND_CHAT = "NOT_FOUND_CHAT"
    NOT_FOUND_RESOURCE = "NOT_FOUND_RESOURCE"

    # Tool errors
    TOOL_UNKNOWN = "TOOL_UNKNOWN"
    TOOL_DISABLED = "TOOL_DISABLED"
    TOOL_INVALID_ARGS = "TOOL_INVALID_ARGS"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"
    TOOL_LOOP_EXCEEDED = "TOOL_LOOP_EXCEEDED"

    # Semantic memory
    MEMORY_UNAVAILABLE = "MEMORY_UNAVAILABLE"
    MEMORY_TIMEOUT = "MEMORY_TIMEOUT"

    # LLM errors (model interactions)
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_RESPONSE_INVALID = "LLM_RESPONSE_INVALID"
    LLM_CIRCUIT_OPEN = "LLM_CIRCUIT_OPEN"

    # External service errors
    EXTERNAL_SEARCH_FAILED = "EXTERNAL_SEARCH_FAILED"
    EXTERNAL_WEATHER_FAILED = "EXTERNAL_WEATHER_FAILED"
    EXTERNAL_NETWORK_ERROR = "EXTERNAL_NETWORK_ERROR"

    # Session state
    SESSION_TURN_IN_FLIGHT = "SESSION_TURN_IN_FLIGHT"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"

    # Lifecycle
    SHUTDOWN_IN_PROGRESS = "SHUTDOWN_IN_PROGRESS"
    SHUTDOWN_TIMEOUT = "SHUTDOWN_TIMEOUT"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"
    INTERNAL_STATE_ERROR = "INTERNAL_STATE_ERROR"
