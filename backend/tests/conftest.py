"""
Shared pytest fixtures and fakes for the chat pipeline tests.

The fakes stand in for the external collaborators (model server, semantic
memory, WebSocket) so the pipeline can run without a network.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from config import RuntimeConfig
from services.memory_client import MemoryHit


def make_config(**overrides) -> RuntimeConfig:
    """Config with deterministic values regardless of the environment."""
    values = {
        "rate_limit_per_minute": 60,
        "rate_limit_per_hour": 500,
        "rate_limit_per_minute_keyless": None,
        "rate_limit_per_hour_keyless": None,
        "enabled_tools": (),
        "tool_timeout_s": 5.0,
        "max_tool_rounds": 5,
        "max_tool_calls_per_round": 5,
        "llm_timeout_s": 5.0,
        "llm_retry_max": 0,
        "memory_timeout_s": 1.0,
        "database_url": "",
        "searxng_url": "http://searx.test",
        "max_message_length": 4000,
        "shutdown_grace_s": 1.0,
        "trust_proxy": False,
    }
    values.update(overrides)
    return RuntimeConfig().with_overrides(**values)


# ---------------------------------------------------------------------------
# Model server
# ---------------------------------------------------------------------------


def text_round(*parts: str, tool_calls: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """Chunks of one streamed model response, in LLMClient.stream_chat() format."""
    chunks = [{"message": {"content": part}, "done": False} for part in parts]
    final: Dict[str, Any] = {"message": {"content": ""}, "done": True}
    if tool_calls:
        final["message"]["tool_calls"] = tool_calls
    chunks.append(final)
    return chunks


def tool_call(name: str, arguments: Any, call_id: str = "call_0") -> Dict[str, Any]:
    return {"id": call_id, "function": {"name": name, "arguments": arguments}}


class FakeLLMClient:
    """Scripted stand-in for LLMClient.

    Each entry of ``rounds`` answers one stream_chat() call: a list of
    chunk dicts, or an exception to raise before the first chunk. The last
    entry repeats when the script runs out.
    """

    def __init__(self, rounds=None, delay_s: float = 0.0):
        self.rounds = list(rounds or [text_round("Hello! How can I help?")])
        self.delay_s = delay_s
        self.calls: List[Dict[str, Any]] = []

    async def stream_chat(self, model="", messages=None, tools=None, options=None, api_key=None):
        self.calls.append({"model": model, "messages": list(messages or []), "tools": tools, "api_key": api_key})
        script = self.rounds[min(len(self.calls) - 1, len(self.rounds) - 1)]
        if isinstance(script, BaseException):
            raise script
        for chunk in script:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            yield chunk

    async def close(self):
        pass


# ---------------------------------------------------------------------------
# Semantic memory
# ---------------------------------------------------------------------------


def memory_hit(content: str, chat_id: str = "old-chat", role: str = "user", title: str = "Pets") -> MemoryHit:
    return MemoryHit(
        content=content,
        source_chat_id=chat_id,
        timestamp=datetime(2024, 3, 1, tzinfo=timezone.utc),
        chat_title=title,
        role=role,
        score=0.9,
    )


class FakeMemory:
    """In-memory stand-in for MemoryClient that records every call."""

    def __init__(self, hits=None, error: Optional[Exception] = None, delay_s: float = 0.0):
        self.hits = list(hits or [])
        self.error = error
        self.delay_s = delay_s
        self.searches: List[Dict[str, Any]] = []
        self.indexed: List[Dict[str, Any]] = []
        self.deleted_chats: List[tuple] = []
        self.deleted_users: List[str] = []

    async def search(self, identity, query, limit=None):
        self.searches.append({"identity": identity, "query": query, "limit": limit})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return list(self.hits)

    async def index_exchange(self, identity, chat_id, user_text, assistant_text, chat_title=None):
        self.indexed.append(
            {
                "identity": identity,
                "chat_id": chat_id,
                "user_text": user_text,
                "assistant_text": assistant_text,
                "chat_title": chat_title,
            }
        )

    async def delete_chat(self, identity, chat_id):
        self.deleted_chats.append((identity, chat_id))

    async def delete_user(self, identity):
        self.deleted_users.append(identity)

    async def health_check(self):
        return {"status": "pass", "responseTime": 1.0}

    async def close(self):
        pass


# ---------------------------------------------------------------------------
# Chat store
# ---------------------------------------------------------------------------


class FakeStore:
    """Stand-in for ChatStore that records what the pipeline persists."""

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.exchanges: List[tuple] = []
        self.deleted: List[tuple] = []
        self.closed = False

    async def connect(self):
        return self.healthy

    async def disconnect(self):
        self.closed = True

    async def health_check(self):
        if self.healthy:
            return {"status": "pass", "responseTime": 1.0}
        return {"status": "fail", "error": "connection refused"}

    async def record_exchange(self, user_id, chat_id, user_text, assistant_text, attachments=None):
        self.exchanges.append((user_id, chat_id, user_text, assistant_text, attachments))
        return True

    async def delete_chat(self, user_id, chat_id):
        self.deleted.append((user_id, chat_id))
        return True


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """Collects frames sent by the server."""

    def __init__(self, fail_after: Optional[int] = None):
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.closed_with: Optional[int] = None
        self.fail_after = fail_after

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("type") == event_type]


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fake_memory():
    return FakeMemory()
