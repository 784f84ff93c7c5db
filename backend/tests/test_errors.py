"""
Tests for the Parley error handling module.
"""

import asyncio
import logging

import pytest

from errors import (
    ErrorCode,
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
    error_response,
    error_event,
    handle_tool_errors,
    handle_async_tool_errors,
)


class TestErrorCodes:
    """Test error code enum."""

    def test_error_codes_are_strings(self):
        """Error codes should be string values."""
        assert ErrorCode.RATE_LIMIT_EXCEEDED.value == "RATE_LIMIT_EXCEEDED"
        assert ErrorCode.NOT_FOUND_LOCATION == "NOT_FOUND_LOCATION"

    def test_error_codes_have_categories(self):
        """Error codes should follow category naming convention."""
        tool_codes = [c for c in ErrorCode if c.value.startswith("TOOL_")]
        assert len(tool_codes) >= 5

        llm_codes = [c for c in ErrorCode if c.value.startswith("LLM_")]
        assert len(llm_codes) >= 3


class TestParleyError:
    """Test base ParleyError exception."""

    def test_basic_creation(self):
        err = ParleyError("Test error")
        assert err.message == "Test error"
        assert err.details is None
        assert err.code == ErrorCode.INTERNAL_UNEXPECTED
        assert err.recoverable is False

    def test_with_context(self):
        err = ParleyError("Test error", foo="bar", count=42)
        assert err.context == {"foo": "bar", "count": 42}

    def test_str_representation(self):
        """String representation includes message and details."""
        assert str(ParleyError("Test error", details="More info")) == "Test error - More info"
        assert str(ParleyError("Test error")) == "Test error"

    def test_overrides(self):
        err = ParleyError("Bad config", code=ErrorCode.INTERNAL_CONFIG_ERROR, recoverable=True)
        assert err.code == ErrorCode.INTERNAL_CONFIG_ERROR
        assert err.recoverable is True

    def test_to_dict(self):
        d = ParleyError("Test error", details="More info", key="value").to_dict()
        assert d == {
            "code": "INTERNAL_UNEXPECTED",
            "message": "Test error",
            "details": "More info",
            "recoverable": False,
            "context": {"key": "value"},
        }


class TestSubclassCodes:
    """Subclasses pick their code from the keyword they are given."""

    def test_validation_error_types(self):
        assert ValidationError("x").code == ErrorCode.VALIDATION_MISSING_PARAM
        assert ValidationError("x", error_type="type").code == ErrorCode.VALIDATION_INVALID_TYPE
        assert ValidationError("x", error_type="unknown").code == ErrorCode.VALIDATION_UNKNOWN_PARAM

    def test_validation_error_context(self):
        err = ValidationError("Invalid value", parameter="symbol", expected="ticker", received="???")
        assert err.context == {"parameter": "symbol", "expected": "ticker", "received": "???"}

    def test_not_found_resource_types(self):
        assert NotFoundError("x", resource_type="location").code == ErrorCode.NOT_FOUND_LOCATION
        assert NotFoundError("x", resource_type="symbol").code == ErrorCode.NOT_FOUND_SYMBOL
        assert NotFoundError("x").code == ErrorCode.NOT_FOUND_RESOURCE

    def test_llm_error_types(self):
        assert LLMError("x").code == ErrorCode.LLM_UNAVAILABLE
        assert LLMError("x", error_type="timeout").code == ErrorCode.LLM_TIMEOUT
        assert LLMError("x", error_type="circuit_open").code == ErrorCode.LLM_CIRCUIT_OPEN
        assert LLMError("x", model="gpt-4o-mini").context["model"] == "gpt-4o-mini"

    def test_model_error_alias(self):
        assert ModelError is LLMError
        assert LLMError("x").recoverable is True

    def test_external_service_codes(self):
        assert ExternalServiceError("x", service="searxng").code == ErrorCode.EXTERNAL_SEARCH_FAILED
        assert ExternalServiceError("x", service="weather").code == ErrorCode.EXTERNAL_WEATHER_FAILED
        err = ExternalServiceError("x", service="memory", status_code=502)
        assert err.code == ErrorCode.EXTERNAL_NETWORK_ERROR
        assert err.context == {"service": "memory", "status_code": 502}

    def test_augmentation_failure_timeout(self):
        assert AugmentationFailure("x", error_type="timeout").code == ErrorCode.MEMORY_TIMEOUT
        assert AugmentationFailure("x").code == ErrorCode.MEMORY_UNAVAILABLE

    def test_tool_execution_error_types(self):
        assert ToolExecutionError("x", error_type="unknown").code == ErrorCode.TOOL_UNKNOWN
        assert ToolExecutionError("x", error_type="disabled").code == ErrorCode.TOOL_DISABLED
        assert ToolExecutionError("x", error_type="invalid_args").code == ErrorCode.TOOL_INVALID_ARGS
        assert ToolExecutionError("x", error_type="timeout", tool="get_time").context == {"tool": "get_time"}

    def test_lifecycle_errors(self):
        assert ToolCallLoopExceeded("x", rounds=5).rounds == 5
        assert SessionInvariantViolation("x", session_id="abc").context == {"session_id": "abc"}
        err = ShutdownTimeout("x", pending=2)
        assert err.pending == 2
        assert err.recoverable is False


class TestErrorResponse:
    """Test error_response function."""

    def test_parley_error_response(self):
        err = NotFoundError("No such place", details="Check the spelling", resource_type="location")
        resp = error_response(err, tool="get_weather")

        assert resp["success"] is False
        assert resp["error"]["code"] == "NOT_FOUND_LOCATION"
        assert resp["error"]["message"] == "No such place"
        assert resp["error"]["details"] == "Check the spelling"
        assert resp["error"]["tool"] == "get_weather"
        assert resp["error"]["recoverable"] is True

    def test_generic_exception_text_is_hidden(self):
        resp = error_response(ValueError("secret connection string"), tool="test")

        assert resp["error"]["code"] == "INTERNAL_UNEXPECTED"
        assert "secret" not in resp["error"]["message"]
        assert resp["error"]["recoverable"] is False

    def test_without_context(self):
        resp = error_response(NotFoundError("No chat", resource_id="abc123"), include_context=False)
        assert resp["error"]["context"] is None


class TestErrorEvent:
    """Test error_event payloads sent to the client."""

    def test_only_wired_builders_are_exported(self):
        import errors

        builders = {name for name in errors.__all__ if name.endswith(("_response", "_event"))}
        assert builders == {"error_response", "error_event"}

    def test_admission_rejected_carries_retry(self):
        err = AdmissionRejected("Slow down", retry_after=12, window="minute")
        payload = error_event(err, chat_id="chat-1")

        assert payload == {
            "chatId": "chat-1",
            "code": "RATE_LIMIT_EXCEEDED",
            "message": "Slow down",
            "recoverable": True,
            "retryAfter": 12,
            "window": "minute",
        }

    def test_model_error_has_no_retry(self):
        payload = error_event(LLMError("Model down"), chat_id="chat-1")
        assert payload["code"] == "LLM_UNAVAILABLE"
        assert "retryAfter" not in payload

    def test_generic_exception(self):
        payload = error_event(RuntimeError("boom"))
        assert payload["code"] == "INTERNAL_UNEXPECTED"
        assert payload["recoverable"] is False
        assert "boom" not in payload["message"]


class TestHandleToolErrors:
    """Test handle_tool_errors decorator."""

    def test_success_passthrough(self):
        @handle_tool_errors("test")
        def my_func():
            return {"success": True, "result": 42}

        assert my_func() == {"success": True, "result": 42}

    def test_parley_error_handling(self):
        @handle_tool_errors("test")
        def my_func():
            raise NotFoundError("Not found", resource_type="location")

        result = my_func()
        assert result["success"] is False
        assert result["error"]["code"] == "NOT_FOUND_LOCATION"
        assert result["error"]["tool"] == "test"

    def test_generic_exception_handling(self):
        @handle_tool_errors("test")
        def my_func():
            raise ValueError("Bad value")

        assert my_func()["error"]["code"] == "INTERNAL_UNEXPECTED"

    def test_expected_errors_logged_as_warning(self, caplog):
        @handle_tool_errors("test")
        def my_func():
            raise NotFoundError("Not found")

        with caplog.at_level(logging.WARNING):
            my_func()

        assert "NOT_FOUND_RESOURCE" in caplog.text
        assert all(r.levelno == logging.WARNING for r in caplog.records)

    def test_preserves_function_metadata(self):
        @handle_tool_errors("test")
        def my_func():
            """My docstring."""
            return {"success": True}

        assert my_func.__name__ == "my_func"
        assert my_func.__doc__ == "My docstring."


class TestAsyncHandleToolErrors:
    """Test handle_async_tool_errors decorator."""

    def test_wrapper_is_async(self):
        @handle_async_tool_errors("test")
        async def my_func():
            return {"success": True}

        assert asyncio.iscoroutinefunction(my_func)
        assert my_func.__name__ == "my_func"

    def test_converts_exception(self):
        @handle_async_tool_errors("test")
        async def my_func():
            raise ExternalServiceError("Search down", service="searxng")

        result = asyncio.run(my_func())
        assert result["success"] is False
        assert result["error"]["code"] == "EXTERNAL_SEARCH_FAILED"

    def test_cancellation_propagates(self):
        @handle_async_tool_errors("test")
        async def my_func():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(my_func())
