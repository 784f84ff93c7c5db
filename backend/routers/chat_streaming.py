"""
Parley Chat Streaming - Per-session delivery channel

StreamingRelay owns one bounded queue and one writer task per connected
session. Everything sent to a client (answer chunks, typing indicators,
rate-limit info, errors) goes through that queue, so frames reach the
client in the order they were emitted.

Per turn the relay accumulates the answer, marks exactly one frame as
complete (carrying ``fullResponse``) and drops anything emitted for the
turn afterwards. Emitting to a session that is gone is a no-op.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional

if TYPE_CHECKING:
    from routers.chat_orchestration.session import StreamChunk

logger = logging.getLogger(__name__)

MESSAGE_RESPONSE = "message-response"
TYPING = "typing"
RATE_LIMIT_INFO = "rate-limit-info"
ERROR = "error"
VECTOR_DB_RESET = "vector-db-reset"

# Completed turn ids remembered per session for dropping late chunks
FINISHED_TURNS_KEPT = 16

_CLOSE = object()


@dataclass
class _TurnState:
    chat_id: Optional[str]
    parts: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.time)


@dataclass
class _Channel:
    session_id: str
    websocket: Any
    queue: asyncio.Queue
    writer: Optional[asyncio.Task] = None
    closed: bool = False
    turns: Dict[str, _TurnState] = field(default_factory=dict)
    finished: Deque[str] = field(default_factory=lambda: deque(maxlen=FINISHED_TURNS_KEPT))


def build_final_response(chat_id: Optional[str], text: str, full_response: str, error: bool = False) -> Dict[str, Any]:
    """Build the completing ``message-response`` frame of a turn."""
    frame = {
        "type": MESSAGE_RESPONSE,
        "chatId": chat_id,
        "message": text,
        "isComplete": True,
        "fullResponse": full_response,
    }
    if error:
        frame["error"] = True
    return frame


class StreamingRelay:
    """Ordered, per-session delivery of chunks and events to WebSockets."""

    def __init__(self, queue_size: int = 256, close_timeout_s: float = 5.0):
        self.queue_size = queue_size
        self.close_timeout_s = close_timeout_s
        self._channels: Dict[str, _Channel] = {}

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    def open(self, session_id: str, websocket) -> None:
        """Create the session's channel and start its writer task."""
        if session_id in self._channels:
            raise ValueError(f"Channel already open for session {session_id}")
        channel = _Channel(session_id, websocket, asyncio.Queue(maxsize=self.queue_size))
        channel.writer = asyncio.create_task(self._write_loop(channel), name=f"relay-{session_id}")
        self._channels[session_id] = channel

    def is_open(self, session_id: str) -> bool:
        channel = self._channels.get(session_id)
        return channel is not None and not channel.closed

    async def close(self, session_id: str, drain: bool = True) -> None:
        """Stop the session's writer. With ``drain``, queued frames are sent first."""
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        writer = channel.writer
        if drain and not channel.closed and writer is not None and not writer.done():
            channel.closed = True
            try:
                await asyncio.wait_for(channel.queue.put(_CLOSE), timeout=self.close_timeout_s)
                await asyncio.wait_for(asyncio.shield(writer), timeout=self.close_timeout_s)
            except asyncio.TimeoutError:
                logger.warning(f"Relay for session {session_id} did not drain in time")
        channel.closed = True
        if writer is not None and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    async def close_all(self, drain: bool = True) -> None:
        for session_id in list(self._channels):
            await self.close(session_id, drain=drain)

    def __len__(self) -> int:
        return len(self._channels)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def begin_turn(self, session_id: str, turn_id: str, chat_id: Optional[str]) -> None:
        channel = self._channels.get(session_id)
        if channel is not None:
            channel.turns[turn_id] = _TurnState(chat_id=chat_id)

    def is_finished(self, session_id: str, turn_id: str) -> bool:
        channel = self._channels.get(session_id)
        return channel is not None and turn_id in channel.finished

    def abandon_turn(self, session_id: str, turn_id: str) -> None:
        """Drop any further chunks of a cancelled turn."""
        channel = self._channels.get(session_id)
        if channel is not None:
            channel.turns.pop(turn_id, None)
            channel.finished.append(turn_id)

    async def emit(self, session_id: str, chunk: "StreamChunk") -> bool:
        """Queue one chunk for delivery.

        Returns:
            False when the chunk was discarded (no channel, channel closed,
            or the turn already completed)
        """
        channel = self._channels.get(session_id)
        if channel is None or channel.closed:
            return False
        if chunk.turn_id in channel.finished:
            logger.debug(f"Dropping chunk after completion of turn {chunk.turn_id}")
            return False

        state = channel.turns.get(chunk.turn_id)
        if state is None:
            state = channel.turns[chunk.turn_id] = _TurnState(chat_id=None)
        if chunk.text:
            state.parts.append(chunk.text)

        if chunk.is_final:
            channel.turns.pop(chunk.turn_id, None)
            channel.finished.append(chunk.turn_id)
            full = "".join(state.parts)
            elapsed = time.time() - state.started
            logger.info(f"[STREAM] turn {chunk.turn_id}: {len(full)} chars in {elapsed:.2f}s")
            frame = build_final_response(state.chat_id, chunk.text, full, error=chunk.error)
        else:
            frame = {
                "type": MESSAGE_RESPONSE,
                "chatId": state.chat_id,
                "message": chunk.text,
                "isComplete": False,
            }
        return await self._enqueue(channel, frame)

    async def send_event(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        """Queue a non-chunk event (typing, rate-limit-info, error, ...)."""
        channel = self._channels.get(session_id)
        if channel is None or channel.closed:
            return False
        return await self._enqueue(channel, {"type": event_type, **payload})

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _enqueue(self, channel: _Channel, frame: Dict[str, Any]) -> bool:
        # Bounded queue: a slow client makes its producer wait
        await channel.queue.put(frame)
        return True

    async def _write_loop(self, channel: _Channel) -> None:
        while True:
            frame = await channel.queue.get()
            if frame is _CLOSE:
                return
            try:
                await channel.websocket.send_json(frame)
            except Exception as e:
                logger.info(f"Session {channel.session_id} stopped receiving ({e.__class__.__name__}), closing relay")
                channel.closed = True
                self._drain_queue(channel)
                return

    @staticmethod
    def _drain_queue(channel: _Channel) -> None:
        while True:
            try:
                channel.queue.get_nowait()
            except asyncio.QueueEmpty:
                return
