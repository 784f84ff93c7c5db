"""
Parley Connection Manager - Session table and turn pipeline

Owns every connected Session and routes inbound events:

    send-message  -> in-flight check -> payload validation -> admission
                  -> rate-limit-info -> typing -> augment -> orchestrate
                  -> relay -> typing off -> persist + index (background)
    delete-chat   -> semantic memory + chat store
    reset-vector-db (alias reset-memory)
                  -> semantic memory, answered with vector-db-reset

Turns run as tasks so the receive loop keeps reading while a turn streams;
that is what lets a second send-message be rejected and a disconnect be
noticed mid-turn.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ValidationError as PayloadValidationError

from ..chat_prompts import MODEL_ERROR_TEXT, RATE_LIMITED_TEXT, SHUTTING_DOWN_TEXT, TOO_LONG_TEXT
from ..chat_streaming import (
    ERROR,
    MESSAGE_RESPONSE,
    RATE_LIMIT_INFO,
    TYPING,
    VECTOR_DB_RESET,
    StreamingRelay,
)
from .augmenter import ContextAugmenter
from .orchestrator import ToolOrchestrator
from .session import Session, StreamChunk, Turn, normalize_history
from errors import AdmissionRejected, SessionInvariantViolation, error_event, log_error
from logging_config import log_message_in
from middleware.rate_limit import RateLimiter, rate_limit_identity
from services.database import chat_title

logger = logging.getLogger(__name__)

RESET_EVENTS = ("reset-vector-db", "reset-memory")

INVALID_MESSAGE_TEXT = "I couldn't read that message. Please try sending it again."


class SendMessage(BaseModel):
    """Inbound ``send-message`` payload."""

    chatId: str
    message: str = ""
    chatHistory: List[Any] = []
    attachments: List[Dict[str, Any]] = []
    userId: Optional[str] = None
    apiKey: Optional[str] = None


class DeleteChat(BaseModel):
    chatId: str
    userId: Optional[str] = None


class ResetMemory(BaseModel):
    userId: Optional[str] = None


def _attachment_metadata(attachments) -> List[Dict[str, Any]]:
    """Attachment descriptions for storage, without the payload."""
    return [
        {k: a.get(k) for k in ("type", "name", "mimeType", "size") if a.get(k) is not None}
        for a in attachments
    ]


class ConnectionManager:
    """Connected sessions and the per-turn pipeline."""

    def __init__(
        self,
        limiter: RateLimiter,
        augmenter: ContextAugmenter,
        orchestrator: ToolOrchestrator,
        relay: StreamingRelay,
        config,
        store=None,
        memory=None,
    ):
        self.limiter = limiter
        self.augmenter = augmenter
        self.orchestrator = orchestrator
        self.relay = relay
        self.config = config
        self.store = store
        self.memory = memory
        self.draining = False
        self._sessions: Dict[str, Session] = {}
        self._background: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Session table
    # ------------------------------------------------------------------

    async def connect(self, websocket, identity: str) -> Session:
        """Accept the socket and register a new session."""
        await websocket.accept()
        session = Session(session_id=uuid.uuid4().hex, identity=identity, websocket=websocket)
        self._sessions[session.session_id] = session
        self.relay.open(session.session_id, websocket)
        logger.info(f"Session {session.session_id[:8]} connected from {identity} ({len(self._sessions)} active)")
        return session

    async def disconnect(self, session_id: str) -> None:
        """Tear down a session and cancel its in-flight turn."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.cancel()
        task = session.task
        if session.current_turn is not None:
            self.relay.abandon_turn(session_id, session.current_turn.turn_id)
        await self.relay.close(session_id, drain=False)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log_error(logger, e, context="Disconnect", include_traceback=False)
        logger.info(f"Session {session_id[:8]} disconnected ({len(self._sessions)} active)")

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def in_flight(self) -> int:
        return sum(1 for s in self._sessions.values() if s.busy)

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    async def handle_event(self, session: Session, data: Dict[str, Any]) -> None:
        """Dispatch one inbound frame by its ``type``."""
        event_type = data.get("type") if isinstance(data, dict) else None
        try:
            if event_type == "send-message":
                await self.submit_turn(session, data)
            elif event_type == "delete-chat":
                await self.delete_chat(session, data)
            elif event_type in RESET_EVENTS:
                await self.reset_memory(session, data)
            else:
                logger.debug(f"Ignoring unknown event type: {event_type!r}")
        except SessionInvariantViolation as e:
            logger.warning(f"{e.message} (session {session.session_id[:8]})")

    async def submit_turn(self, session: Session, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Validate, admit and start a turn.

        Returns:
            The running turn task, or None when the message was answered
            without running a turn (invalid, rate limited, draining)

        Raises:
            SessionInvariantViolation: a turn is already in flight
        """
        if session.busy:
            raise SessionInvariantViolation(
                "Message rejected: a response is still being generated",
                session_id=session.session_id,
            )

        sid = session.session_id
        try:
            payload = SendMessage.model_validate(data)
        except PayloadValidationError as e:
            logger.warning(f"Invalid send-message payload: {e.error_count()} errors")
            await self._complete_with(sid, data.get("chatId") if isinstance(data, dict) else None, INVALID_MESSAGE_TEXT)
            return None

        if self.draining:
            await self._complete_with(sid, payload.chatId, SHUTTING_DOWN_TEXT)
            return None

        text = payload.message.strip()
        if not text and not payload.attachments:
            await self._complete_with(sid, payload.chatId, INVALID_MESSAGE_TEXT)
            return None
        if len(text) > self.config.max_message_length:
            await self._complete_with(
                sid,
                payload.chatId,
                TOO_LONG_TEXT.format(length=len(text), limit=self.config.max_message_length),
            )
            return None

        identity = rate_limit_identity(payload.userId, payload.apiKey, fallback=session.identity)
        decision = self.limiter.admit(identity, self.config.limits_for(bool(payload.apiKey)))
        await self.relay.send_event(sid, RATE_LIMIT_INFO, decision.snapshot.to_event())

        if not decision.allowed:
            rejection = AdmissionRejected(
                RATE_LIMITED_TEXT.format(retry_after=decision.retry_after),
                retry_after=decision.retry_after,
                window=decision.window,
            )
            await self.relay.send_event(sid, ERROR, error_event(rejection, payload.chatId))
            await self.relay.send_event(
                sid,
                MESSAGE_RESPONSE,
                {
                    "chatId": payload.chatId,
                    "message": rejection.message,
                    "isComplete": True,
                    "rateLimited": True,
                    "retryAfter": decision.retry_after,
                },
            )
            await self.relay.send_event(sid, TYPING, {"chatId": payload.chatId, "isTyping": False})
            return None

        turn = Turn(
            session_id=sid,
            user_id=payload.userId or identity,
            chat_id=payload.chatId,
            user_text=text,
            prior_messages=normalize_history(payload.chatHistory, self.config.max_history_messages),
            attachments=tuple(payload.attachments),
            api_key=payload.apiKey or None,
        )
        session.current_turn = turn
        self._idle.clear()
        self.relay.begin_turn(sid, turn.turn_id, turn.chat_id)
        await self.relay.send_event(sid, TYPING, {"chatId": turn.chat_id, "isTyping": True})

        session.task = asyncio.create_task(self._run_turn(session, turn), name=f"turn-{turn.turn_id}")
        return session.task

    async def delete_chat(self, session: Session, data: Dict[str, Any]) -> None:
        try:
            payload = DeleteChat.model_validate(data)
        except PayloadValidationError:
            logger.warning("Invalid delete-chat payload")
            return
        user_id = payload.userId or rate_limit_identity(None, fallback=session.identity)

        if self.memory is not None:
            try:
                await self.memory.delete_chat(user_id, payload.chatId)
            except Exception as e:
                log_error(logger, e, context="Delete chat (memory)", include_traceback=False)
        if self.store is not None:
            try:
                await self.store.delete_chat(user_id, payload.chatId)
            except Exception as e:
                log_error(logger, e, context="Delete chat (store)", include_traceback=False)
        logger.info(f"Chat {payload.chatId} deleted")

    async def reset_memory(self, session: Session, data: Dict[str, Any]) -> None:
        try:
            payload = ResetMemory.model_validate(data)
        except PayloadValidationError:
            payload = ResetMemory()
        user_id = payload.userId or rate_limit_identity(None, fallback=session.identity)

        success = False
        if self.memory is not None:
            try:
                await self.memory.delete_user(user_id)
                success = True
            except Exception as e:
                log_error(logger, e, context="Reset memory", include_traceback=False)
        await self.relay.send_event(session.session_id, VECTOR_DB_RESET, {"success": success})

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def _run_turn(self, session: Session, turn: Turn) -> None:
        sid = session.session_id
        log_message_in(
            logger,
            turn.user_text,
            chat=turn.chat_id,
            history=len(turn.prior_messages),
            attachments=len(turn.attachments),
        )
        parts: List[str] = []
        completed = False
        failed = False

        try:
            context = await self.augmenter.augment(turn)
            async for chunk in self.orchestrator.run(context, turn, session.cancelled):
                if session.is_cancelled():
                    break
                if chunk.is_final and chunk.error:
                    failed = True
                    await self.relay.send_event(
                        sid,
                        ERROR,
                        {
                            "chatId": turn.chat_id,
                            "code": chunk.error_code,
                            "message": chunk.text.strip(),
                            "recoverable": True,
                        },
                    )
                if chunk.text:
                    parts.append(chunk.text)
                await self.relay.emit(sid, chunk)
                if chunk.is_final:
                    completed = True
                    break
        except asyncio.CancelledError:
            self.relay.abandon_turn(sid, turn.turn_id)
            raise
        except Exception as e:
            log_error(logger, e, context=f"Turn {turn.turn_id}")
            failed = True
            if not session.is_cancelled() and not self.relay.is_finished(sid, turn.turn_id):
                await self.relay.emit(
                    sid,
                    StreamChunk(sid, MODEL_ERROR_TEXT, is_final=True, turn_id=turn.turn_id, error=True),
                )
        finally:
            session.current_turn = None
            session.task = None
            session.turns_completed += 1
            if not session.is_cancelled():
                await self.relay.send_event(sid, TYPING, {"chatId": turn.chat_id, "isTyping": False})
            if self.in_flight() == 0:
                self._idle.set()

        if session.is_cancelled():
            self.relay.abandon_turn(sid, turn.turn_id)
            return
        if completed and not failed:
            self._spawn(self._persist(turn, "".join(parts)))

    async def _persist(self, turn: Turn, answer: str) -> None:
        """Save the exchange and index it for later sessions. Failures are logged only."""
        if self.store is not None:
            try:
                await self.store.record_exchange(
                    turn.user_id,
                    turn.chat_id,
                    turn.user_text,
                    answer,
                    _attachment_metadata(turn.attachments) or None,
                )
            except Exception as e:
                log_error(logger, e, context="Persist", include_traceback=False)
        if self.memory is not None:
            try:
                await self.memory.index_exchange(
                    turn.user_id,
                    turn.chat_id,
                    turn.user_text,
                    answer,
                    chat_title=chat_title(turn.user_text),
                )
            except Exception as e:
                log_error(logger, e, context="Index", include_traceback=False)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _complete_with(self, session_id: str, chat_id: Optional[str], text: str) -> None:
        """Answer a message with a single complete response, without a turn."""
        await self.relay.send_event(
            session_id,
            MESSAGE_RESPONSE,
            {"chatId": chat_id, "message": text, "isComplete": True, "fullResponse": text},
        )

    # ------------------------------------------------------------------
    # Shutdown support
    # ------------------------------------------------------------------

    def begin_draining(self) -> None:
        self.draining = True

    async def wait_idle(self) -> None:
        """Wait until no turn is in flight and background writes finished."""
        await self._idle.wait()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cancel_all(self) -> int:
        """Cancel every in-flight turn. Returns how many were cancelled."""
        tasks = []
        for session in self._sessions.values():
            if session.task is not None and not session.task.done():
                session.cancel()
                session.task.cancel()
                tasks.append(session.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._idle.set()
        return len(tasks)

    async def close_all(self, code: int = 1012) -> None:
        """Close every connection (1012 = service restart)."""
        for session_id in list(self._sessions):
            session = self._sessions.pop(session_id)
            session.cancel()
            await self.relay.close(session_id, drain=True)
            if session.websocket is not None:
                try:
                    await session.websocket.close(code=code)
                except Exception as e:
                    logger.debug(f"Closing session {session_id[:8]}: {e}")
        logger.info("All sessions closed")
