"""
LLM Client - wraps the async OpenAI SDK for any OpenAI-compatible server.

Stream format:
    {"message": {"content": "..."}, "done": False}
    ...
    {"message": {"content": "", "tool_calls": [...]}, "done": True}

Key translations:
- Vision: images:[{mime, data}] -> OpenAI content:[{type:"image_url",...}]
- Streaming: ChatCompletionChunk deltas -> {"message": {"content": chunk}}
- Tool calls: fragments accumulated per index -> simplified dicts with
  parsed arguments
- Options: max_tokens / num_predict -> max_tokens, temperature, top_p
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


def _translate_messages_for_openai(messages: List[Dict]) -> List[Dict]:
    """Translate internal message format to OpenAI API format.

    Handles vision images, tool call results, and regular messages.
    """
    translated = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")
        images = msg.get("images", [])

        # Vision messages with base64 images
        if images:
            parts = []
            if content:
                parts.append({"type": "text", "text": content})
            for image in images:
                if isinstance(image, dict):
                    mime, data = image.get("mime", "image/png"), image.get("data", "")
                else:
                    mime, data = "image/png", image
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime};base64,{data}"},
                })
            translated.append({"role": role, "content": parts})

        # Tool call results
        elif role == "tool":
            translated.append({
                "role": "tool",
                "content": content if isinstance(content, str) else json.dumps(content),
                "tool_call_id": msg.get("tool_call_id", "call_0"),
            })

        # Regular messages
        else:
            new_msg = {"role": role, "content": content}

            # Forward tool_calls from assistant messages
            if role == "assistant" and msg.get("tool_calls"):
                openai_tool_calls = []
                for i, tc in enumerate(msg["tool_calls"]):
                    fn = tc.get("function", tc)
                    openai_tool_calls.append({
                        "id": tc.get("id") or f"call_{i}",
                        "type": "function",
                        "function": {
                            "name": fn.get("name", ""),
                            "arguments": (
                                json.dumps(fn["arguments"])
                                if isinstance(fn.get("arguments"), dict)
                                else fn.get("arguments", "{}")
                            ),
                        },
                    })
                new_msg["tool_calls"] = openai_tool_calls
                # OpenAI requires content to be None when tool_calls present
                if not content:
                    new_msg["content"] = None

            translated.append(new_msg)

    return translated


def _parse_arguments(raw: str) -> Any:
    """Tool call arguments as a dict. Unparseable text is returned as-is."""
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {raw[:200]}")
        return raw


class _ToolCallAccumulator:
    """Joins streamed tool call fragments, keyed by their index."""

    def __init__(self):
        self._calls: Dict[int, Dict[str, str]] = {}

    def add(self, deltas) -> None:
        for tc in deltas:
            index = tc.index if tc.index is not None else len(self._calls)
            slot = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if tc.id:
                slot["id"] = tc.id
            if tc.function:
                if tc.function.name:
                    slot["name"] += tc.function.name
                if tc.function.arguments:
                    slot["arguments"] += tc.function.arguments

    def result(self) -> List[Dict[str, Any]]:
        return [
            {
                "function": {"name": slot["name"], "arguments": _parse_arguments(slot["arguments"])},
                "id": slot["id"] or f"call_{index}",
            }
            for index, slot in sorted(self._calls.items())
            if slot["name"]
        ]


class LLMClient:
    """Async OpenAI-compatible chat client."""

    def __init__(self, base_url: str, api_key: str = "not-needed", timeout: float = 60.0):
        """
        Args:
            base_url: Server URL including the /v1 prefix
            api_key: Server API key (per-request keys override it)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._openai = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "not-needed",
            timeout=timeout,
            # Retries are handled by the gateway, before the first token only
            max_retries=0,
        )

    def _build_kwargs(
        self,
        model: str,
        messages: List[Dict],
        tools: Optional[List[Dict]],
        options: Optional[Dict],
    ) -> Dict[str, Any]:
        options = options or {}
        kwargs: Dict[str, Any] = {
            "model": model or "default",
            "messages": _translate_messages_for_openai(messages),
        }
        if "temperature" in options:
            kwargs["temperature"] = options["temperature"]
        if "top_p" in options:
            kwargs["top_p"] = options["top_p"]
        if "num_predict" in options:
            kwargs["max_tokens"] = options["num_predict"]
        elif "max_tokens" in options:
            kwargs["max_tokens"] = options["max_tokens"]
        if tools:
            kwargs["tools"] = tools
        return kwargs

    async def stream_chat(
        self,
        model: str = "",
        messages: Optional[List[Dict]] = None,
        tools: Optional[List[Dict]] = None,
        options: Optional[Dict] = None,
        api_key: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream a chat completion as chunk dicts.

        Content deltas are yielded as they arrive. The last chunk has
        ``done=True`` and carries any tool calls the model requested.

        Args:
            model: Model name
            messages: Internal-format message dicts
            tools: OpenAI tool declarations
            options: Generation options (temperature, max_tokens, ...)
            api_key: Caller's own key, used instead of the server key
        """
        kwargs = self._build_kwargs(model, messages or [], tools, options)
        client = self._openai.with_options(api_key=api_key) if api_key else self._openai

        stream = await client.chat.completions.create(stream=True, **kwargs)
        tool_calls = _ToolCallAccumulator()
        try:
            async for chunk in stream:
                delta = chunk.choices[0].delta if chunk.choices else None
                if not delta:
                    continue
                if delta.tool_calls:
                    tool_calls.add(delta.tool_calls)
                if delta.content:
                    yield {"message": {"content": delta.content}, "done": False}
        finally:
            await stream.close()

        final: Dict[str, Any] = {"message": {"content": ""}, "done": True}
        calls = tool_calls.result()
        if calls:
            final["message"]["tool_calls"] = calls
        yield final

    async def close(self) -> None:
        await self._openai.close()
