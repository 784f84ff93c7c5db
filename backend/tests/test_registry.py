"""
Tests for the tool registry: catalog, validation and dispatch.
"""

import asyncio
import json

import pytest

from conftest import make_config
from errors import ToolExecutionError, ValidationError
from tools.registry import (
    TRUNCATION_MARKER,
    ToolCall,
    ToolCategory,
    ToolDefinition,
    ToolRegistry,
    ToolResult,
    build_default_registry,
)

CORE_TOOLS = {
    "get_weather",
    "get_stock_price",
    "get_time",
    "search_web",
    "search_chat_history",
    "delete_memory",
}


def _echo_tool(executor, name: str = "echo") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description="Echo the text back",
        parameters={
            "text": {"type": "string", "minLength": 1, "maxLength": 20},
            "times": {"type": "integer"},
            "mode": {"type": "string", "enum": ["plain", "loud"]},
        },
        required_params=["text"],
        executor=executor,
        category=ToolCategory.SIMPLE,
    )


class Recorder:
    """Sync executor that records whether it ran."""

    def __init__(self):
        self.calls = []

    def __call__(self, text, times=1, mode="plain", user_id=None):
        self.calls.append({"text": text, "times": times, "mode": mode, "user_id": user_id})
        return {"success": True, "echo": text * times}


class TestRegistryIntegrity:
    """Built-in catalog sanity checks."""

    def test_core_tools_registered(self):
        registry = build_default_registry(make_config())
        assert {tool.name for tool in registry.enabled_tools()} == CORE_TOOLS

    def test_tool_schemas_valid(self):
        registry = build_default_registry(make_config())
        for entry in registry.get_tools_schema():
            assert entry["type"] == "function"
            fn = entry["function"]
            assert fn["description"]
            assert fn["parameters"]["type"] == "object"
            assert set(fn["parameters"]["required"]) <= set(fn["parameters"]["properties"])

    def test_enabled_tools_filter_schema(self):
        registry = build_default_registry(make_config(enabled_tools=("get_time", "nonexistent")))
        names = [entry["function"]["name"] for entry in registry.get_tools_schema()]
        assert names == ["get_time"]
        assert "get_weather" in registry
        assert not registry.is_enabled("get_weather")


class TestValidation:

    def setup_method(self):
        self.registry = ToolRegistry()
        self.registry.register(_echo_tool(Recorder()))

    def test_valid_arguments_pass(self):
        args = {"text": "hi", "times": 2, "mode": "loud"}
        assert self.registry.validate_arguments("echo", args) is args

    @pytest.mark.parametrize(
        "args",
        [
            {},
            {"text": None},
            {"text": 5},
            {"text": ""},
            {"text": "x" * 21},
            {"text": "hi", "times": "2"},
            {"text": "hi", "times": True},
            {"text": "hi", "mode": "whisper"},
            {"text": "hi", "extra": 1},
        ],
    )
    def test_schema_violations(self, args):
        with pytest.raises(ValidationError):
            self.registry.validate_arguments("echo", args)

    def test_non_object_arguments(self):
        with pytest.raises(ValidationError):
            self.registry.validate_arguments("echo", "not json")

    def test_unknown_tool(self):
        with pytest.raises(ToolExecutionError) as exc_info:
            self.registry.validate_arguments("nope", {})
        assert exc_info.value.code.value == "TOOL_UNKNOWN"


class TestExecute:

    def test_schema_invalid_call_never_reaches_executor(self):
        recorder = Recorder()
        registry = ToolRegistry()
        registry.register(_echo_tool(recorder))

        result = asyncio.run(registry.execute(ToolCall("echo", {"text": 42}, id="call_1")))

        assert recorder.calls == []
        assert result.success is False
        assert result.call_id == "call_1"
        assert result.data["error"]["code"] == "TOOL_INVALID_ARGS"

    def test_disabled_tool_never_reaches_executor(self):
        recorder = Recorder()
        registry = ToolRegistry(enabled=["other"])
        registry.register(_echo_tool(recorder))

        result = asyncio.run(registry.execute(ToolCall("echo", {"text": "hi"})))

        assert recorder.calls == []
        assert result.data["error"]["code"] == "TOOL_DISABLED"

    def test_unknown_tool_is_a_result(self):
        result = asyncio.run(ToolRegistry().execute(ToolCall("made_up", {})))
        assert result.success is False
        assert result.data["error"]["code"] == "TOOL_UNKNOWN"

    def test_sync_executor_gets_only_accepted_context(self):
        recorder = Recorder()
        registry = ToolRegistry(context={"memory": object()})
        registry.register(_echo_tool(recorder))

        result = asyncio.run(registry.execute(ToolCall("echo", {"text": "ab", "times": 2}), user_id="u1", chat_id="c1"))

        assert result.success is True
        assert result.data["echo"] == "abab"
        assert recorder.calls == [{"text": "ab", "times": 2, "mode": "plain", "user_id": "u1"}]

    def test_async_executor_timeout(self):
        async def slow(text):
            await asyncio.sleep(1)
            return {"success": True}

        registry = ToolRegistry(timeout_s=0.05)
        registry.register(_echo_tool(slow))
        result = asyncio.run(registry.execute(ToolCall("echo", {"text": "hi"})))

        assert result.success is False
        assert result.data["error"]["code"] == "TOOL_TIMEOUT"

    def test_executor_exception_is_contained(self):
        def broken(text):
            raise RuntimeError("database password leaked here")

        registry = ToolRegistry()
        registry.register(_echo_tool(broken))
        result = asyncio.run(registry.execute(ToolCall("echo", {"text": "hi"})))

        assert result.success is False
        assert "password" not in result.to_content()

    def test_error_dict_from_executor(self):
        async def failing(text):
            return {"success": False, "error": {"code": "NOT_FOUND_LOCATION", "message": "No such place"}}

        registry = ToolRegistry()
        registry.register(_echo_tool(failing))
        result = asyncio.run(registry.execute(ToolCall("echo", {"text": "hi"})))

        assert result.success is False
        assert result.error == "No such place"

    def test_non_dict_result_is_wrapped(self):
        registry = ToolRegistry()
        registry.register(_echo_tool(lambda text: text.upper()))
        result = asyncio.run(registry.execute(ToolCall("echo", {"text": "hi"})))
        assert result.data == {"success": True, "result": "HI"}


class TestToolResult:

    def test_to_content_is_json(self):
        content = ToolResult(name="x", success=True, data={"success": True, "value": 1}).to_content()
        assert json.loads(content) == {"success": True, "value": 1}

    def test_to_content_truncates(self):
        content = ToolResult(name="x", success=True, data={"text": "a" * 500}).to_content(max_chars=100)
        assert content.endswith(TRUNCATION_MARKER)
        assert len(content) == 100 + len(TRUNCATION_MARKER)
