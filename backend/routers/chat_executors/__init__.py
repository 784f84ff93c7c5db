"""
Parley Chat Executors - Tool implementations

Executors are plain (async) functions registered in tools/registry.py.
Each one is wrapped by handle_tool_errors / handle_async_tool_errors so a
failure comes back as a structured error dict instead of an exception.

Executors declare the context they need as keyword parameters (``config``,
``memory``, ``http_client``, ``user_id``, ``chat_id``); the registry passes
only what each one accepts.
"""

from .clock import execute_get_time
from .memory import execute_delete_memory, execute_search_chat_history
from .search import execute_web_search
from .stock import execute_get_stock_price
from .weather import execute_get_weather

__all__ = [
    "execute_get_weather",
    "execute_get_stock_price",
    "execute_get_time",
    "execute_web_search",
    "execute_search_chat_history",
    "execute_delete_memory",
]
