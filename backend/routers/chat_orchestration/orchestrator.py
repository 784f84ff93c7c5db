"""
Parley Tool Orchestrator - Streaming model loop with tool dispatch

Handles one turn's model interaction:
1. Stream the model's answer for the current context
2. If the model asked for tools: validate, execute, append results, repeat
3. Otherwise finish the turn

Also manages:
- Retry of transient model errors before the first token
- Per-chunk timeouts and a circuit breaker around the model server
- Round ceiling, per-round call cap and response length cap
"""

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from openai import APIConnectionError, APITimeoutError, InternalServerError, RateLimitError

from ..chat_prompts import (
    EMPTY_RESPONSE_TEXT,
    MODEL_ERROR_TEXT,
    MODEL_TIMEOUT_TEXT,
    RESPONSE_TRUNCATED_TEXT,
    PromptConfig,
)
from .augmenter import EffectiveContext
from .session import StreamChunk, Turn
from errors import ErrorCode, LLMError, ToolCallLoopExceeded, ToolExecutionError, error_response
from logging_config import log_llm, log_message_out
from tools.registry import ToolCall, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

RETRY_DELAY_S = 1.0

_PERMANENT_ERROR_PATTERNS = [
    "model not found",
    "does not exist",
    "invalid model",
    "invalid api key",
    "incorrect api key",
]

_TRANSIENT_ERROR_PATTERNS = [
    "model is loading",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "overloaded",
]

_TRANSIENT_ERROR_TYPES = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)


def is_retryable_error(error: Exception) -> bool:
    """Check if error is transient and worth retrying (not permanent failures)."""
    error_str = str(error).lower()
    # Never retry permanent errors
    if any(p in error_str for p in _PERMANENT_ERROR_PATTERNS):
        return False
    if isinstance(error, _TRANSIENT_ERROR_TYPES):
        return True
    return any(p in error_str for p in _TRANSIENT_ERROR_PATTERNS)


class _CircuitBreaker:
    """Prevents cascading failures when the model server is down."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failures = 0
        self.threshold = failure_threshold
        self.timeout = recovery_timeout
        self.last_failure_time = 0.0
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    def is_open(self) -> bool:
        if self.state == "open":
            if self._clock() - self.last_failure_time > self.timeout:
                self.state = "half_open"
                return False
            return True
        return False

    def record_success(self) -> None:
        self.failures = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failures >= self.threshold:
            if self.state != "open":
                logger.error("Circuit breaker OPEN - LLM service unavailable")
            self.state = "open"


class LLMGateway:
    """Streams model output with timeouts, retries and a circuit breaker.

    Retries only happen before the first content token; once text has
    reached the client a failure ends the turn.
    """

    def __init__(
        self,
        client,
        model: str,
        options: Optional[Dict[str, Any]] = None,
        timeout_s: float = 60.0,
        retry_max: int = 2,
        retry_delay_s: float = RETRY_DELAY_S,
        circuit_threshold: int = 5,
        circuit_cooldown_s: float = 30.0,
    ):
        self.client = client
        self.model = model
        self.options = dict(options or {})
        self.timeout_s = timeout_s
        self.retry_max = retry_max
        self.retry_delay_s = retry_delay_s
        self.breaker = _CircuitBreaker(circuit_threshold, circuit_cooldown_s)

    @classmethod
    def from_config(cls, client, config) -> "LLMGateway":
        return cls(
            client,
            model=config.model_chat,
            options=config.get_llm_params(),
            timeout_s=config.llm_timeout_s,
            retry_max=config.llm_retry_max,
            circuit_threshold=config.llm_circuit_threshold,
            circuit_cooldown_s=config.llm_circuit_cooldown_s,
        )

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        api_key: Optional[str] = None,
        round_num: int = 0,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield chunk dicts from the model.

        Raises:
            LLMError: circuit open, timeout, or a non-retryable failure
        """
        if self.breaker.is_open():
            raise LLMError(
                "LLM service temporarily unavailable",
                error_type="circuit_open",
                model=self.model,
            )

        attempt = 0
        while True:
            start_time = time.time()
            emitted = False
            log_llm(logger, "start", model=self.model, round_num=round_num)
            try:
                iterator = self.client.stream_chat(
                    model=self.model,
                    messages=messages,
                    tools=tools,
                    options=self.options,
                    api_key=api_key,
                ).__aiter__()
                try:
                    while True:
                        try:
                            chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.timeout_s)
                        except StopAsyncIteration:
                            break
                        if chunk.get("message", {}).get("content"):
                            emitted = True
                        yield chunk
                finally:
                    await iterator.aclose()
            except asyncio.TimeoutError:
                self.breaker.record_failure()
                logger.warning(
                    f"LLM stream stalled after {time.time() - start_time:.2f}s "
                    f"(limit={self.timeout_s}s per chunk, model={self.model})"
                )
                raise LLMError(
                    f"Model response timed out after {self.timeout_s}s",
                    error_type="timeout",
                    model=self.model,
                ) from None
            except Exception as e:
                self.breaker.record_failure()
                if not emitted and attempt < self.retry_max and is_retryable_error(e):
                    attempt += 1
                    delay = self.retry_delay_s * (2 ** (attempt - 1))
                    logger.warning(f"Retryable error on {self.model}: {e}, retry {attempt}/{self.retry_max} in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue
                raise LLMError("Model request failed", details=str(e), model=self.model) from e

            self.breaker.record_success()
            log_llm(logger, "end", model=self.model, duration=time.time() - start_time)
            return


def _to_tool_call(raw: Dict[str, Any], fallback_id: str) -> ToolCall:
    fn = raw.get("function", raw)
    args = fn.get("arguments", {})
    # Parse args if string
    if isinstance(args, str):
        try:
            args = json.loads(args) if args.strip() else {}
        except json.JSONDecodeError:
            pass
    return ToolCall(name=fn.get("name", ""), arguments=args, id=raw.get("id") or fallback_id)


class ToolOrchestrator:
    """Runs the model/tool loop for a turn and yields StreamChunks.

    State machine: AwaitingModel -> ToolCallsPending -> AwaitingModel ...
    -> Final. Every run that is not cancelled ends with exactly one chunk
    where ``is_final`` is set, and nothing follows it.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        registry: ToolRegistry,
        prompt_config: Optional[PromptConfig] = None,
        max_rounds: int = 5,
        max_calls_per_round: int = 5,
        max_result_chars: int = 10000,
        max_response_chars: int = 50000,
    ):
        self.gateway = gateway
        self.registry = registry
        self.prompt_config = prompt_config or PromptConfig()
        self.max_rounds = max_rounds
        self.max_calls_per_round = max_calls_per_round
        self.max_result_chars = max_result_chars
        self.max_response_chars = max_response_chars

    @classmethod
    def from_config(cls, gateway, registry, config, prompt_config=None) -> "ToolOrchestrator":
        return cls(
            gateway,
            registry,
            prompt_config=prompt_config,
            max_rounds=config.max_tool_rounds,
            max_calls_per_round=config.max_tool_calls_per_round,
            max_result_chars=config.max_tool_result_chars,
            max_response_chars=config.max_response_chars,
        )

    async def run(
        self,
        context: EffectiveContext,
        turn: Turn,
        cancelled: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream the answer for ``turn``.

        Model failures end the turn with a final chunk flagged ``error``.
        When ``cancelled`` is set the run stops at the next resumption
        point without a final chunk.
        """

        def chunk(text: str, **kwargs) -> StreamChunk:
            return StreamChunk(session_id=turn.session_id, text=text, turn_id=turn.turn_id, **kwargs)

        def is_cancelled() -> bool:
            return cancelled is not None and cancelled.is_set()

        messages = list(context.messages)
        schema = self.registry.get_tools_schema() or None
        produced = 0
        truncated = False
        tool_rounds = 0
        tools_used: List[str] = []

        try:
            while True:
                if is_cancelled():
                    return

                round_text: List[str] = []
                tool_calls: List[Dict[str, Any]] = []
                async for part in self.gateway.stream(
                    messages, tools=schema, api_key=turn.api_key, round_num=tool_rounds + 1
                ):
                    if is_cancelled():
                        return
                    message = part.get("message", {})
                    if message.get("tool_calls"):
                        tool_calls = message["tool_calls"]
                    text = message.get("content") or ""
                    if not text or truncated:
                        continue
                    room = self.max_response_chars - produced
                    if len(text) > room:
                        text = text[:room]
                        truncated = True
                    if text:
                        produced += len(text)
                        round_text.append(text)
                        yield chunk(text)

                if not tool_calls or truncated:
                    break

                if tool_rounds >= self.max_rounds:
                    loop_error = ToolCallLoopExceeded(
                        f"Tool round ceiling of {self.max_rounds} reached", rounds=tool_rounds
                    )
                    logger.warning(f"{loop_error.message} (turn {turn.turn_id})")
                    notice = self.prompt_config.round_limit_text.format(rounds=self.max_rounds)
                    yield chunk(("\n\n" if produced else "") + notice)
                    produced += len(notice)
                    break

                tool_rounds += 1
                messages.append({"role": "assistant", "content": "".join(round_text), "tool_calls": tool_calls})
                for index, raw in enumerate(tool_calls):
                    if is_cancelled():
                        return
                    call = _to_tool_call(raw, fallback_id=f"call_{tool_rounds}_{index}")
                    result = await self._execute(call, index, turn)
                    tools_used.append(call.name)
                    messages.append(
                        {
                            "role": "tool",
                            "content": result.to_content(self.max_result_chars),
                            "tool_call_id": call.id,
                        }
                    )
        except LLMError as e:
            logger.warning(f"Turn {turn.turn_id} ended on model error: {e}")
            text = MODEL_TIMEOUT_TEXT if e.code == ErrorCode.LLM_TIMEOUT else MODEL_ERROR_TEXT
            yield chunk(("\n\n" if produced else "") + text, is_final=True, error=True, error_code=e.code.value)
            return

        if produced == 0:
            yield chunk(self.prompt_config.empty_response_text or EMPTY_RESPONSE_TEXT)
        elif truncated:
            yield chunk(RESPONSE_TRUNCATED_TEXT)

        log_message_out(logger, tools_used=tools_used, chars=produced, rounds=tool_rounds)
        yield chunk("", is_final=True)

    async def _execute(self, call: ToolCall, index: int, turn: Turn) -> ToolResult:
        if index >= self.max_calls_per_round:
            error = ToolExecutionError(
                f"Skipped: at most {self.max_calls_per_round} tool calls can run in one step",
                tool=call.name,
            )
            return ToolResult(
                name=call.name,
                success=False,
                data=error_response(error, tool=call.name),
                error=error.message,
                call_id=call.id,
            )
        return await self.registry.execute(
            call,
            user_id=turn.user_id,
            chat_id=turn.chat_id,
            session_id=turn.session_id,
        )
