"""
Semantic Memory Client - HTTP client for the cross-session memory service.

The memory service owns embedding and index maintenance. This client only
speaks its REST contract:

    POST   /search                      {userId, query, limit} -> {results: [...]}
    POST   /messages                    {userId, chatId, chatTitle, messages: [...]}
    DELETE /users/{userId}/chats/{chatId}
    DELETE /users/{userId}
    GET    /health

search() raises AugmentationFailure on any transport or protocol problem;
callers treat that as "no results".
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from errors import AugmentationFailure, ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryHit:
    """One ranked search result from another session."""

    content: str
    source_chat_id: str
    timestamp: Optional[datetime] = None
    chat_title: str = ""
    role: str = ""
    score: Optional[float] = None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_hit(item: Dict[str, Any]) -> Optional[MemoryHit]:
    content = item.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    score = item.get("score")
    return MemoryHit(
        content=content,
        source_chat_id=str(item.get("chatId") or item.get("chat_id") or ""),
        timestamp=_parse_timestamp(item.get("timestamp")),
        chat_title=item.get("chatTitle") or item.get("chat_title") or "",
        role=item.get("role") or "",
        score=float(score) if isinstance(score, (int, float)) else None,
    )


class MemoryClient:
    """Async client for the semantic memory service."""

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 5.0,
        default_limit: int = 5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.default_limit = default_limit
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)

    async def search(self, identity: str, query: str, limit: Optional[int] = None) -> List[MemoryHit]:
        """Relevance-ranked hits for ``query`` within one identity's memory.

        Each call is independent. Raises AugmentationFailure on timeout,
        connection errors, non-2xx responses or malformed payloads.
        """
        payload = {"userId": identity, "query": query, "limit": limit or self.default_limit}
        try:
            response = await self._client.post("/search", json=payload, timeout=self.timeout_s)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise AugmentationFailure("Semantic memory timed out", error_type="timeout") from e
        except httpx.HTTPStatusError as e:
            raise AugmentationFailure(
                "Semantic memory returned an error",
                details=f"status {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise AugmentationFailure("Semantic memory unavailable", details=str(e)) from e

        items = data.get("results") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise AugmentationFailure("Semantic memory returned a malformed response")

        hits = []
        for item in items:
            if isinstance(item, dict):
                hit = _parse_hit(item)
                if hit is not None:
                    hits.append(hit)
        return hits

    async def index_exchange(
        self,
        identity: str,
        chat_id: str,
        user_text: str,
        assistant_text: str,
        chat_title: str = "New Chat",
    ) -> None:
        """Index a user/assistant pair so later sessions can find it."""
        now_ms = int(time.time() * 1000)
        payload = {
            "userId": identity,
            "chatId": chat_id,
            "chatTitle": chat_title,
            "messages": [
                {"id": f"user-{now_ms}", "role": "user", "content": user_text, "timestamp": now_ms},
                {"id": f"assistant-{now_ms}", "role": "assistant", "content": assistant_text, "timestamp": now_ms},
            ],
        }
        await self._send("POST", "/messages", json=payload)

    async def delete_chat(self, identity: str, chat_id: str) -> None:
        """Remove one chat's indexed entries."""
        await self._send("DELETE", f"/users/{quote(identity, safe='')}/chats/{quote(chat_id, safe='')}")

    async def delete_user(self, identity: str) -> None:
        """Remove every indexed entry for an identity."""
        await self._send("DELETE", f"/users/{quote(identity, safe='')}")

    async def health_check(self) -> Dict[str, Any]:
        """``{"status": "pass"|"fail", "responseTime": ms, "error"?}``"""
        start = time.monotonic()
        try:
            response = await self._client.get("/health", timeout=self.timeout_s)
            response.raise_for_status()
        except httpx.HTTPError as e:
            return {"status": "fail", "error": str(e) or e.__class__.__name__}
        return {"status": "pass", "responseTime": round((time.monotonic() - start) * 1000, 2)}

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> None:
        try:
            response = await self._client.request(method, path, timeout=self.timeout_s, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "Semantic memory request failed",
                details=f"{method} {path} returned {e.response.status_code}",
                service="memory",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                "Semantic memory unavailable",
                details=str(e) or e.__class__.__name__,
                service="memory",
            ) from e
