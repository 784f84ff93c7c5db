"""
Parley Chat Executors - Web Search

Web search via SearXNG, JSON format first with an HTML fallback for
instances that disable the JSON API.
"""

import logging
import re
from html import unescape
from typing import Any, Dict, List, Optional

import httpx

from errors import ExternalServiceError, handle_async_tool_errors
from .common import http_session

logger = logging.getLogger(__name__)

_RESULT_ARTICLE_RE = re.compile(
    r"<article[^>]*class=[\"'][^\"']*result[^\"']*[\"'][^>]*>(.*?)</article>",
    re.IGNORECASE | re.DOTALL,
)
_LINK_RE = re.compile(
    r'<a[^>]*href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
    re.IGNORECASE | re.DOTALL,
)
_CONTENT_RE = re.compile(
    r'<p[^>]*class=["\'][^"\']*content[^"\']*["\'][^>]*>(.*?)</p>',
    re.IGNORECASE | re.DOTALL,
)

SNIPPET_CHARS = 300


def _strip_html(value: str) -> str:
    cleaned = re.sub(r"<[^>]+>", " ", value or "")
    cleaned = unescape(cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def _deduplicate_results(results: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Remove duplicate results by URL."""
    seen_urls = set()
    unique = []
    for result in results:
        normalized = result.get("url", "").lower().split("?")[0].rstrip("/")
        if normalized not in seen_urls:
            seen_urls.add(normalized)
            unique.append(result)
    return unique


def _parse_json_results(data: Dict[str, Any], limit: int) -> List[Dict[str, str]]:
    results: List[Dict[str, str]] = []
    for item in data.get("results", [])[:limit]:
        results.append(
            {
                "title": (item.get("title") or "").strip(),
                "url": (item.get("url") or "").strip(),
                "content": (item.get("content") or "").strip()[:SNIPPET_CHARS],
            }
        )
    return results


def _parse_html_results(html_text: str, limit: int) -> List[Dict[str, str]]:
    results: List[Dict[str, str]] = []
    for block in _RESULT_ARTICLE_RE.findall(html_text or ""):
        link_match = _LINK_RE.search(block)
        if not link_match:
            continue

        url = unescape(link_match.group(1)).strip()
        if not url or url.startswith("/"):
            continue

        content_match = _CONTENT_RE.search(block)
        results.append(
            {
                "title": _strip_html(link_match.group(2)),
                "url": url,
                "content": (_strip_html(content_match.group(1)) if content_match else "")[:SNIPPET_CHARS],
            }
        )
        if len(results) >= limit:
            break
    return results


async def fetch_searx_results(
    query: str,
    limit: int,
    searxng_url: str,
    timeout_s: float = 10.0,
    http_client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, str]]:
    """Fetch search results from SearXNG with JSON->HTML fallback."""
    if not searxng_url:
        raise ExternalServiceError(
            "Web search is not configured",
            details="Set SEARXNG_URL to enable web search.",
            service="searxng",
            status_code=503,
        )

    endpoint = f"{searxng_url.rstrip('/')}/search"
    try:
        async with http_session(http_client, timeout_s) as client:
            for response_format in ("json", "html"):
                params = {"q": query, "categories": "general"}
                if response_format == "json":
                    params["format"] = "json"

                try:
                    response = await client.get(endpoint, params=params, timeout=timeout_s)
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    status_code = exc.response.status_code
                    if response_format == "json" and status_code in {400, 401, 403, 404, 406, 415}:
                        logger.warning(f"SearXNG JSON format unavailable (HTTP {status_code}); retrying with HTML")
                        continue
                    raise ExternalServiceError(
                        "Search service error",
                        details=f"SearXNG returned status {status_code}",
                        service="searxng",
                        status_code=status_code,
                    )

                if response_format == "json":
                    try:
                        return _parse_json_results(response.json(), limit)
                    except ValueError as exc:
                        logger.warning(f"SearXNG JSON parse failed ({exc}); retrying with HTML")
                        continue

                return _parse_html_results(response.text, limit)
    except httpx.TimeoutException:
        raise ExternalServiceError(
            "Search service timed out",
            details="The search request took too long. Try again.",
            service="searxng",
        )
    except httpx.RequestError:
        raise ExternalServiceError(
            "Search service unavailable",
            details="Could not connect to the search service",
            service="searxng",
        )

    return []


@handle_async_tool_errors("search_web")
async def execute_web_search(query: str, config=None, http_client=None) -> Dict[str, Any]:
    """
    Execute web search via SearXNG.

    Args:
        query: Search query

    Returns:
        Search results with title, url and snippet
    """
    max_results = max(1, int(getattr(config, "searxng_max_results", 5) or 5))
    raw = await fetch_searx_results(
        query,
        limit=max_results * 2,
        searxng_url=getattr(config, "searxng_url", ""),
        timeout_s=getattr(config, "searxng_timeout_s", 10.0),
        http_client=http_client,
    )
    results = _deduplicate_results(raw)[:max_results]

    if not results:
        return {
            "success": True,
            "query": query,
            "results": [],
            "result_count": 0,
            "message": f"No web results found for '{query}'. Try rephrasing the search.",
        }
    return {"success": True, "query": query, "results": results, "result_count": len(results)}
