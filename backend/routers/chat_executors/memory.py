"""
Parley Chat Executors - Chat History

Model-invoked search and deletion of the user's semantic memory. Searches
never cross identities: the identity comes from the turn, not the model.
"""

import logging
from typing import Any, Dict

from errors import AugmentationFailure, handle_async_tool_errors
from logging_config import log_memory

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 500


def _require_memory(memory) -> None:
    if memory is None:
        raise AugmentationFailure(
            "Chat history search is not available right now",
            details="Semantic memory is not configured",
        )


@handle_async_tool_errors("search_chat_history")
async def execute_search_chat_history(query: str, memory=None, user_id: str = "", chat_id: str = "") -> Dict[str, Any]:
    """
    Search the user's other chat sessions.

    Hits from the current chat are dropped; the model already sees them.
    """
    _require_memory(memory)
    hits = await memory.search(user_id, query)
    hits = [hit for hit in hits if not chat_id or hit.source_chat_id != chat_id]
    log_memory(logger, "search", query, hits=len(hits))

    if not hits:
        return {
            "success": True,
            "query": query,
            "results": [],
            "message": f"Nothing about '{query}' was found in other conversations. "
            "Answer from general knowledge or ask the user.",
        }

    return {
        "success": True,
        "query": query,
        "results": [
            {
                "content": hit.content[:SNIPPET_CHARS],
                "chat_title": hit.chat_title or "Untitled Chat",
                "role": hit.role,
                "date": hit.timestamp.strftime("%Y-%m-%d") if hit.timestamp else None,
            }
            for hit in hits
        ],
    }


@handle_async_tool_errors("delete_memory")
async def execute_delete_memory(scope: str, memory=None, user_id: str = "", chat_id: str = "") -> Dict[str, Any]:
    """Forget the current chat or everything for this user."""
    _require_memory(memory)
    if scope == "current_chat":
        await memory.delete_chat(user_id, chat_id)
        message = "This conversation has been removed from memory."
    else:
        await memory.delete_user(user_id)
        message = "All remembered conversations have been deleted."
    logger.info(f"Memory deleted: scope={scope}")
    return {"success": True, "scope": scope, "message": message}
