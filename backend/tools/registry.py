"""
Tool Registry - Declarative tool catalog and dispatch for Parley.

Each tool is a self-contained definition (name, description that steers the
model, JSON-schema parameters, executor). The registry:

- publishes OpenAI function-calling declarations for enabled tools
- validates model-issued arguments against the declared schema
- dispatches to the executor keyed by name, with a timeout
- converts every failure into a ToolResult carrying an error payload

Invalid arguments, unknown names and disabled tools never reach an
executor.
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from errors import ToolExecutionError, ValidationError, error_response
from logging_config import log_tool

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[Result truncated due to length]"


class ToolCategory(Enum):
    """Tool categories for grouping and processing."""

    SIMPLE = "simple"  # Local lookups (time)
    EXTERNAL = "external"  # Web search, weather, quotes
    MEMORY = "memory"  # Semantic memory search and deletion


@dataclass
class ToolDefinition:
    """Definition of a tool for the registry."""

    name: str
    description: str
    parameters: Dict[str, Any]
    required_params: List[str]
    executor: Callable[..., Any]
    category: ToolCategory
    friendly_name: str = ""


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    name: str
    arguments: Dict[str, Any]
    id: str = ""


@dataclass
class ToolResult:
    """Standardized result from tool execution."""

    name: str
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    call_id: str = ""

    def to_content(self, max_chars: Optional[int] = None) -> str:
        """Serialize for the ``tool`` message fed back to the model."""
        payload = self.data if self.data else {"success": self.success, "error": self.error}
        content = json.dumps(payload, default=str, ensure_ascii=False)
        if max_chars is not None and len(content) > max_chars:
            content = content[:max_chars] + TRUNCATION_MARKER
        return content


_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


def _check_type(value: Any, expected: str) -> bool:
    types = _JSON_TYPES.get(expected)
    if types is None:
        return True
    # bool is an int subclass but not a JSON number
    if expected in ("integer", "number") and isinstance(value, bool):
        return False
    return isinstance(value, types)


class ToolRegistry:
    """
    Catalog of callable tools.

    Usage:
        registry = ToolRegistry(enabled=config.enabled_tools, context={"memory": memory})
        registry.register(ToolDefinition(...))

        schema = registry.get_tools_schema()
        result = await registry.execute(ToolCall("get_time", {"location": "Tokyo"}))

    ``context`` values are passed to executors that declare a parameter of
    the same name, alongside per-call context such as ``user_id``.
    """

    def __init__(
        self,
        enabled: Iterable[str] = (),
        timeout_s: float = 20.0,
        context: Optional[Dict[str, Any]] = None,
    ):
        self._tools: Dict[str, ToolDefinition] = {}
        self._enabled = frozenset(enabled)
        self.timeout_s = timeout_s
        self._context = dict(context or {})

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool definition."""
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def is_enabled(self, name: str) -> bool:
        """An empty enablement list means every registered tool is enabled."""
        return name in self._tools and (not self._enabled or name in self._enabled)

    def enabled_tools(self) -> List[ToolDefinition]:
        return [tool for tool in self._tools.values() if self.is_enabled(tool.name)]

    def get_tools_schema(self) -> List[Dict[str, Any]]:
        """Generate OpenAI-compatible tools schema for function calling."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": {
                        "type": "object",
                        "properties": tool.parameters,
                        "required": tool.required_params,
                    },
                },
            }
            for tool in self.enabled_tools()
        ]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_arguments(self, name: str, args: Any) -> Dict[str, Any]:
        """Check arguments against the declared schema.

        Returns:
            The arguments dict, unchanged

        Raises:
            ToolExecutionError: unknown or disabled tool
            ValidationError: arguments violate the schema
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {name}", tool=name, error_type="unknown")
        if not self.is_enabled(name):
            raise ToolExecutionError(f"Tool is disabled: {name}", tool=name, error_type="disabled")
        if not isinstance(args, dict):
            raise ValidationError(
                "Tool arguments must be an object",
                expected="object",
                received=type(args).__name__,
                error_type="type",
            )

        for param in tool.required_params:
            if param not in args or args[param] is None:
                raise ValidationError(f"Missing required parameter: {param}", parameter=param)

        for key, value in args.items():
            spec = tool.parameters.get(key)
            if spec is None:
                raise ValidationError(f"Unknown parameter: {key}", parameter=key, error_type="unknown")
            if value is None:
                continue

            expected = spec.get("type")
            if expected and not _check_type(value, expected):
                raise ValidationError(
                    f"Parameter '{key}' must be of type {expected}",
                    parameter=key,
                    expected=expected,
                    received=type(value).__name__,
                    error_type="type",
                )

            allowed = spec.get("enum")
            if allowed is not None and value not in allowed:
                raise ValidationError(
                    f"Parameter '{key}' must be one of: {', '.join(map(str, allowed))}",
                    parameter=key,
                    received=str(value),
                    error_type="range",
                )

            if isinstance(value, str):
                if len(value) < spec.get("minLength", 0):
                    raise ValidationError(f"Parameter '{key}' is too short", parameter=key, error_type="range")
                max_length = spec.get("maxLength")
                if max_length is not None and len(value) > max_length:
                    raise ValidationError(f"Parameter '{key}' is too long", parameter=key, error_type="range")

        return args

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, call: ToolCall, **context) -> ToolResult:
        """
        Validate and run a tool call.

        Args:
            call: The model-issued call
            context: Per-call context (user_id, chat_id, ...)

        Returns:
            ToolResult. Failures are returned, never raised.
        """
        started = time.monotonic()
        log_tool(logger, call.name, "start", args=call.arguments)

        try:
            self.validate_arguments(call.name, call.arguments)
        except ValidationError as e:
            error = ToolExecutionError(
                f"Invalid arguments for {call.name}: {e.message}",
                tool=call.name,
                error_type="invalid_args",
                **(e.context or {}),
            )
            return self._failed(call, error, started)
        except ToolExecutionError as e:
            return self._failed(call, e, started)

        tool = self._tools[call.name]
        kwargs = self._executor_kwargs(tool.executor, {**self._context, **context, **call.arguments})

        try:
            if inspect.iscoroutinefunction(tool.executor):
                result = await asyncio.wait_for(tool.executor(**kwargs), timeout=self.timeout_s)
            else:
                result = await asyncio.wait_for(asyncio.to_thread(tool.executor, **kwargs), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            error = ToolExecutionError(
                f"{call.name} took too long to respond",
                tool=call.name,
                error_type="timeout",
                timeout_s=self.timeout_s,
            )
            return self._failed(call, error, started)
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}", exc_info=True)
            error = ToolExecutionError(f"{call.name} failed", tool=call.name)
            return self._failed(call, error, started)

        if not isinstance(result, dict):
            result = {"success": True, "result": result}

        success = bool(result.get("success", not result.get("error")))
        error_text = None
        if not success:
            err = result.get("error")
            error_text = err.get("message") if isinstance(err, dict) else str(err or "Tool failed")

        log_tool(
            logger,
            call.name,
            "end",
            success=success,
            duration=f"{time.monotonic() - started:.2f}s",
        )
        return ToolResult(name=call.name, success=success, data=result, error=error_text, call_id=call.id)

    @staticmethod
    def _executor_kwargs(executor: Callable[..., Any], available: Dict[str, Any]) -> Dict[str, Any]:
        # Filter kwargs to only those the executor accepts
        sig = inspect.signature(executor)
        if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
            return available
        accepted = set(sig.parameters.keys())
        return {k: v for k, v in available.items() if k in accepted}

    def _failed(self, call: ToolCall, error: ToolExecutionError, started: float) -> ToolResult:
        log_tool(
            logger,
            call.name,
            "end",
            success=False,
            code=error.code.value,
            duration=f"{time.monotonic() - started:.2f}s",
        )
        return ToolResult(
            name=call.name,
            success=False,
            data=error_response(error, tool=call.name),
            error=error.message,
            call_id=call.id,
        )


# =============================================================================
# Built-in catalog
# =============================================================================


def register_core_tools(registry: ToolRegistry) -> None:
    """Register the built-in tools."""
    from routers.chat_executors import (
        execute_get_weather,
        execute_get_stock_price,
        execute_get_time,
        execute_web_search,
        execute_search_chat_history,
        execute_delete_memory,
    )

    registry.register(
        ToolDefinition(
            name="get_weather",
            friendly_name="Weather",
            description="Get the current weather for a city or place. Use for any question about "
            "current temperature, conditions or wind somewhere.",
            parameters={
                "location": {
                    "type": "string",
                    "description": "City or place name, e.g. 'London' or 'Paris, France'",
                    "minLength": 1,
                    "maxLength": 200,
                },
            },
            required_params=["location"],
            executor=execute_get_weather,
            category=ToolCategory.EXTERNAL,
        )
    )

    registry.register(
        ToolDefinition(
            name="get_stock_price",
            friendly_name="Stock Quote",
            description="Look up the latest price of a stock by its ticker symbol (e.g. AAPL, MSFT).",
            parameters={
                "symbol": {
                    "type": "string",
                    "description": "Ticker symbol",
                    "minLength": 1,
                    "maxLength": 12,
                },
            },
            required_params=["symbol"],
            executor=execute_get_stock_price,
            category=ToolCategory.EXTERNAL,
        )
    )

    registry.register(
        ToolDefinition(
            name="get_time",
            friendly_name="Clock",
            description="Get the current local date and time in a city or IANA time zone "
            "(e.g. 'Tokyo' or 'Europe/Berlin').",
            parameters={
                "location": {
                    "type": "string",
                    "description": "City name or IANA time zone",
                    "minLength": 1,
                    "maxLength": 100,
                },
            },
            required_params=["location"],
            executor=execute_get_time,
            category=ToolCategory.SIMPLE,
        )
    )

    registry.register(
        ToolDefinition(
            name="search_web",
            friendly_name="Web Search",
            description="Search the web for current information, news and facts you do not know. "
            "Use for recent events or anything that may have changed since training.",
            parameters={
                "query": {"type": "string", "description": "Search query", "minLength": 1, "maxLength": 500},
            },
            required_params=["query"],
            executor=execute_web_search,
            category=ToolCategory.EXTERNAL,
        )
    )

    registry.register(
        ToolDefinition(
            name="search_chat_history",
            friendly_name="Chat History",
            description="Search the user's OTHER chat sessions for something they said or shared before. "
            "Only use this when the user refers to a previous conversation and the answer is NOT "
            "already in the current conversation. Do not use it for general knowledge questions.",
            parameters={
                "query": {
                    "type": "string",
                    "description": "What to look for, e.g. 'favorite animal'",
                    "minLength": 1,
                    "maxLength": 500,
                },
            },
            required_params=["query"],
            executor=execute_search_chat_history,
            category=ToolCategory.MEMORY,
        )
    )

    registry.register(
        ToolDefinition(
            name="delete_memory",
            friendly_name="Forget",
            description="Delete what has been remembered about the user. Only use when the user "
            "explicitly asks you to forget this chat or everything.",
            parameters={
                "scope": {
                    "type": "string",
                    "enum": ["current_chat", "all"],
                    "description": "'current_chat' forgets this chat, 'all' forgets every chat",
                },
            },
            required_params=["scope"],
            executor=execute_delete_memory,
            category=ToolCategory.MEMORY,
        )
    )

    logger.info(f"Registered {len(registry)} core tools")


def build_default_registry(config, memory=None, http_client=None) -> ToolRegistry:
    """Registry with the built-in tools, enablement taken from config."""
    registry = ToolRegistry(
        enabled=config.enabled_tools,
        timeout_s=config.tool_timeout_s,
        context={"config": config, "memory": memory, "http_client": http_client},
    )
    register_core_tools(registry)

    unknown = [name for name in config.enabled_tools if name not in registry]
    if unknown:
        logger.warning(f"ENABLED_TOOLS names unknown tools: {', '.join(unknown)}")
    logger.info(f"Enabled tools: {', '.join(t.name for t in registry.enabled_tools())}")
    return registry
