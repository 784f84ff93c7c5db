"""
PostgreSQL Chat Store - Async persistence for chats and messages.

Provides:
- Connection pooling with asyncpg
- Health checks and reconnection
- Degraded mode: when PostgreSQL is unreachable, writes are skipped with a
  warning instead of failing the chat turn

Usage:
    store = ChatStore(url=config.database_url)
    await store.connect()
    await store.record_exchange(user_id, chat_id, "hi", "hello!")
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT 'New Chat',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_chats_user ON chats (user_id);

CREATE TABLE IF NOT EXISTS messages (
    id BIGSERIAL PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats (id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    attachments JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages (chat_id, id);
"""

TITLE_LENGTH = 50


def chat_title(text: str) -> str:
    """Chat title from the first user message."""
    text = " ".join((text or "").split())
    if not text:
        return "New Chat"
    return text[:TITLE_LENGTH] + ("..." if len(text) > TITLE_LENGTH else "")


def _looks_like_transient_connect_error(error_text: str) -> bool:
    text = (error_text or "").lower()
    patterns = (
        "connection refused",
        "the database system is starting up",
        "connection reset by peer",
        "connection timed out",
        "timeout expired",
    )
    return any(p in text for p in patterns)


@dataclass
class ChatStore:
    """
    PostgreSQL chat store with degraded-mode support.

    ``available`` is False when disabled by config or when the last
    operation failed; writes are then skipped until a reconnect succeeds.
    """

    url: str = ""
    pool_size: int = 10
    connect_retries: int = 3
    retry_delay_s: float = 2.0

    _pool: Any = field(default=None, repr=False)
    _available: bool = field(default=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _last_error: Optional[str] = field(default=None, repr=False)
    _last_reconnect_attempt: float = field(default=0.0, repr=False)
    _reconnect_interval_s: float = field(default=30.0, repr=False)

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def available(self) -> bool:
        return self._available and self._pool is not None

    async def connect(self) -> bool:
        """
        Establish the connection pool and ensure the schema.

        Returns:
            True if connected, False if running degraded
        """
        if not self.enabled:
            logger.info("Chat store disabled (DATABASE_URL not set), exchanges will not be persisted")
            return False

        async with self._lock:
            if self.available:
                return True
            if self._pool is not None:
                # Stale pool from a failed health check
                self._pool.terminate()
                self._pool = None

            for attempt in range(self.connect_retries + 1):
                try:
                    self._pool = await asyncpg.create_pool(
                        self.url,
                        min_size=1,
                        max_size=self.pool_size,
                        command_timeout=30.0,
                    )
                    async with self._pool.acquire() as conn:
                        await conn.execute(SCHEMA_SQL)
                    self._available = True
                    self._last_error = None
                    logger.info(f"PostgreSQL connected: pool_size={self.pool_size}")
                    return True
                except Exception as e:
                    self._last_error = str(e)
                    if attempt < self.connect_retries and _looks_like_transient_connect_error(str(e)):
                        await asyncio.sleep(self.retry_delay_s)
                        continue
                    break

            logger.warning(f"PostgreSQL connection failed: {self._last_error}, chat store degraded")
            self._available = False
            return False

    async def disconnect(self) -> None:
        """Close the connection pool."""
        async with self._lock:
            if self._pool:
                try:
                    await self._pool.close()
                except Exception as e:
                    logger.warning(f"Error closing PostgreSQL pool: {e}")
                finally:
                    self._pool = None
                    self._available = False

    async def health_check(self) -> Dict[str, Any]:
        """
        Check PostgreSQL reachability.

        Returns:
            ``{"status": "pass"|"fail", "responseTime": ms, "error"?}``
        """
        if not self.enabled:
            return {"status": "fail", "error": "not configured"}

        if not self.available:
            now = time.monotonic()
            if now - self._last_reconnect_attempt >= self._reconnect_interval_s:
                self._last_reconnect_attempt = now
                await self.connect()
            if not self.available:
                return {"status": "fail", "error": self._last_error or "disconnected"}

        start = time.monotonic()
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as e:
            self._mark_unavailable(e)
            return {"status": "fail", "error": str(e)}
        return {"status": "pass", "responseTime": round((time.monotonic() - start) * 1000, 2)}

    # === Chat operations ===

    async def record_exchange(
        self,
        user_id: str,
        chat_id: str,
        user_text: str,
        assistant_text: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        """Persist one user/assistant exchange, creating the chat if needed."""
        if not self.available:
            logger.debug(f"Chat store unavailable, exchange for chat {chat_id} not persisted")
            return False

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO chats (id, user_id, title) VALUES ($1, $2, $3)
                        ON CONFLICT (id) DO UPDATE SET updated_at = now()
                        """,
                        chat_id,
                        user_id,
                        chat_title(user_text),
                    )
                    await conn.executemany(
                        "INSERT INTO messages (chat_id, role, content, attachments) VALUES ($1, $2, $3, $4)",
                        [
                            (chat_id, "user", user_text, json.dumps(attachments) if attachments else None),
                            (chat_id, "assistant", assistant_text, None),
                        ],
                    )
            return True
        except Exception as e:
            self._mark_unavailable(e)
            return False

    async def delete_chat(self, user_id: str, chat_id: str) -> bool:
        """Delete a chat owned by the user. Returns True if a row was removed."""
        if not self.available:
            return False

        try:
            async with self._pool.acquire() as conn:
                status = await conn.execute("DELETE FROM chats WHERE id = $1 AND user_id = $2", chat_id, user_id)
            return status.endswith(" 1")
        except Exception as e:
            self._mark_unavailable(e)
            return False

    async def get_chat_title(self, chat_id: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("SELECT title FROM chats WHERE id = $1", chat_id)
        except Exception as e:
            self._mark_unavailable(e)
            return None

    # === Internal ===

    def _mark_unavailable(self, error: Exception) -> None:
        self._last_error = str(error)
        if self._available:
            logger.warning(f"PostgreSQL unavailable: {error}, chat store degraded")
        self._available = False
