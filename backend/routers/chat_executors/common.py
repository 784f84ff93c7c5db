"""
Parley Chat Executors - Common Utilities

Shared utilities used by multiple executor modules.
"""

import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

_WHITESPACE_RE = re.compile(r"\s+")


@asynccontextmanager
async def http_session(
    http_client: Optional[httpx.AsyncClient] = None, timeout_s: float = 10.0
) -> AsyncIterator[httpx.AsyncClient]:
    """Use the shared client when one is injected, else a short-lived one."""
    if http_client is not None:
        yield http_client
        return
    async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=True) as client:
        yield client


def clean_place_name(value: str) -> str:
    """Collapse whitespace and trim a user-supplied place name."""
    return _WHITESPACE_RE.sub(" ", value or "").strip()
