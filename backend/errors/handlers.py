"""
Error handling decorators and utilities for Parley.

Tool executors are wrapped so that any failure becomes a structured
``{"success": False, "error": {...}}`` dict the model can explain, instead
of an exception that would abort the turn.
"""

import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from .exceptions import ParleyError
from .response import error_response

F = TypeVar("F", bound=Callable[..., Any])


def _report(log: logging.Logger, tool_name: str, error: Exception) -> None:
    # Expected domain failures (unknown location, bad symbol) are not bugs
    if isinstance(error, ParleyError):
        log.warning(f"[{tool_name}] {error.code.value}: {error.message}")
    else:
        log.error(f"[{tool_name}] Unexpected error: {error}", exc_info=True)


def handle_tool_errors(tool_name: str, logger: Optional[logging.Logger] = None):
    """Decorator that catches exceptions and returns standard error responses.

    Example:
        >>> @handle_tool_errors("get_time")
        ... def get_time(location):
        ...     if location not in zones:
        ...         raise NotFoundError("Unknown location", resource_type="location")
        ...     return {"success": True, "time": now}
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"parley.{tool_name}")

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _report(log, tool_name, e)
                return error_response(e, tool=tool_name)

        return wrapper  # type: ignore

    return decorator


def handle_async_tool_errors(tool_name: str, logger: Optional[logging.Logger] = None):
    """Async version of handle_tool_errors.

    ``asyncio.CancelledError`` is a BaseException and still propagates, so
    a cancelled turn is not turned into a tool result.
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"parley.{tool_name}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                _report(log, tool_name, e)
                return error_response(e, tool=tool_name)

        return wrapper  # type: ignore

    return decorator


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Example:
        >>> log_error(logger, err, context="Augment")
        # Logs: "[Augment] MEMORY_TIMEOUT: Semantic memory timed out"
    """
    if isinstance(error, ParleyError):
        message = f"{error.code.value}: {error.message}"
    else:
        message = str(error) or error.__class__.__name__

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)
