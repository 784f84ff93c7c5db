"""
Parley Chat Session - Per-connection state and turn data

Session holds the state of one WebSocket connection. Turn, Message and
StreamChunk are immutable values passed through the pipeline.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

USER = "user"
ASSISTANT = "assistant"

# Roles clients and older stores have used for the two sides of a chat
_ROLE_ALIASES = {
    "user": USER,
    "human": USER,
    "assistant": ASSISTANT,
    "model": ASSISTANT,
    "bot": ASSISTANT,
    "ai": ASSISTANT,
}

_SERIALIZATION_ARTIFACT = "[object Object]"


@dataclass(frozen=True)
class Message:
    """One prior message of a conversation."""

    role: str
    content: str
    attachments: Tuple[Dict[str, Any], ...] = ()
    timestamp: Optional[datetime] = None

    def to_llm(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Turn:
    """One user message and the context it was sent with. Immutable once dispatched."""

    session_id: str
    user_id: str
    chat_id: str
    user_text: str
    prior_messages: Tuple[Message, ...] = ()
    attachments: Tuple[Dict[str, Any], ...] = ()
    api_key: Optional[str] = field(default=None, repr=False)
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StreamChunk:
    """One increment of model output for a turn."""

    session_id: str
    text: str
    is_final: bool = False
    turn_id: str = ""
    # Set on the final chunk of a turn that ended on a model error
    error: bool = False
    error_code: str = ""


@dataclass
class Session:
    """State of one client connection. Owned by ConnectionManager.

    Attributes:
        session_id: Unique connection id
        identity: Client address used when no user id is supplied
        current_turn: The in-flight turn, if any
        cancelled: Set on disconnect or forced shutdown
    """

    session_id: str
    identity: str
    websocket: Any = field(default=None, repr=False)
    connected_at: float = field(default_factory=time.time)
    current_turn: Optional[Turn] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    turns_completed: int = 0

    @property
    def busy(self) -> bool:
        return self.current_turn is not None

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def cancel(self) -> None:
        self.cancelled.set()


# =============================================================================
# History normalization
# =============================================================================


def _coerce_text(content: Any) -> str:
    """Best-effort plain text from a message content value."""
    if isinstance(content, str):
        text = content
    elif isinstance(content, dict):
        text = content.get("text") if isinstance(content.get("text"), str) else ""
        if not text:
            # First non-empty string property
            text = next((v for v in content.values() if isinstance(v, str) and v), "")
    elif isinstance(content, list):
        # Multi-part content: keep the text parts
        text = " ".join(_coerce_text(part) for part in content).strip()
    elif content is None:
        text = ""
    else:
        text = str(content)

    if _SERIALIZATION_ARTIFACT in text:
        logger.warning("History message contains a serialization artifact, stripping it")
        text = text.replace(_SERIALIZATION_ARTIFACT, "").strip()
    return text


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def normalize_history(raw: Any, limit: int = 30) -> Tuple[Message, ...]:
    """Convert client-supplied chat history into Messages.

    Unknown roles and empty messages are dropped, roles are mapped to
    user/assistant, and only the last ``limit`` messages are kept.
    """
    if not isinstance(raw, list):
        return ()

    messages: List[Message] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = _ROLE_ALIASES.get(str(item.get("role", "")).lower())
        if role is None:
            continue

        content = item.get("content")
        if content is None and isinstance(item.get("parts"), list):
            content = item["parts"]
        text = _coerce_text(content)
        if not text:
            continue

        attachments = item.get("attachments") or ()
        if not isinstance(attachments, (list, tuple)):
            attachments = ()
        messages.append(
            Message(
                role=role,
                content=text,
                attachments=tuple(a for a in attachments if isinstance(a, dict)),
                timestamp=_parse_timestamp(item.get("timestamp")),
            )
        )

    if limit and len(messages) > limit:
        messages = messages[-limit:]
    return tuple(messages)
