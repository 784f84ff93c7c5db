"""
Parley Chat Executors - Stock Quotes

Quotes are looked up through the configured SearXNG instance; the model
reads the price out of the result snippets.
"""

import re
from typing import Any, Dict

from errors import NotFoundError, ValidationError, handle_async_tool_errors
from .search import fetch_searx_results

# Ticker symbols: letters and digits, optional class suffix (BRK.B, RDS-A)
_SYMBOL_RE = re.compile(r"^[A-Z][A-Z0-9]{0,6}([.\-][A-Z0-9]{1,3})?$")

MAX_QUOTE_RESULTS = 3


def normalize_symbol(symbol: str) -> str:
    normalized = (symbol or "").strip().upper().lstrip("$")
    if not _SYMBOL_RE.match(normalized):
        raise ValidationError(
            f"'{symbol}' doesn't look like a stock ticker symbol",
            details="Use the exchange ticker, e.g. AAPL or MSFT.",
            parameter="symbol",
            received=symbol,
            error_type="format",
        )
    return normalized


@handle_async_tool_errors("get_stock_price")
async def execute_get_stock_price(symbol: str, config=None, http_client=None) -> Dict[str, Any]:
    """Latest price information for a ticker symbol."""
    symbol = normalize_symbol(symbol)
    results = await fetch_searx_results(
        f"{symbol} stock price today",
        limit=MAX_QUOTE_RESULTS,
        searxng_url=getattr(config, "searxng_url", ""),
        timeout_s=getattr(config, "searxng_timeout_s", 10.0),
        http_client=http_client,
    )
    if not results:
        raise NotFoundError(
            f"I couldn't find current price information for {symbol}",
            details="Check the symbol and try again.",
            resource_type="symbol",
            resource_id=symbol,
        )

    return {
        "success": True,
        "symbol": symbol,
        "sources": results,
        "note": "Prices come from search snippets and may be delayed.",
    }
