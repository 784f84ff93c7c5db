"""
Tests for the built-in tool executors.

HTTP-backed executors get an httpx.AsyncClient on a MockTransport, so no
request leaves the process.
"""

import asyncio

import httpx
import pytest

from conftest import FakeMemory, make_config, memory_hit
from routers.chat_executors import (
    execute_delete_memory,
    execute_get_stock_price,
    execute_get_time,
    execute_get_weather,
    execute_search_chat_history,
    execute_web_search,
)
from routers.chat_executors.clock import resolve_timezone
from routers.chat_executors.stock import normalize_symbol
from errors import ValidationError

PARIS = {"name": "Paris", "admin1": "Île-de-France", "country": "France", "latitude": 48.85, "longitude": 2.35}

FORECAST = {
    "current": {
        "time": "2024-06-01T14:00",
        "temperature_2m": 18.2,
        "apparent_temperature": 17.4,
        "relative_humidity_2m": 61,
        "weather_code": 2,
        "wind_speed_10m": 11.3,
    },
    "current_units": {"temperature_2m": "°C", "wind_speed_10m": "km/h"},
}

SEARX_HTML = """
<html><body>
<article class="result result-default">
  <h3><a href="https://example.com/a">Example &amp; Co</a></h3>
  <p class="content">Snippet <b>text</b> here</p>
</article>
<article class="result">
  <h3><a href="/relative">Skipped</a></h3>
</article>
</body></html>
"""


def _run_with(handler, coro_factory):
    """Run an executor with a mocked shared HTTP client."""

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await coro_factory(client)

    return asyncio.run(scenario())


class TestWeather:

    def test_current_conditions(self):
        def handler(request):
            if request.url.host == "geocoding-api.open-meteo.com":
                assert request.url.params["name"] == "Paris"
                return httpx.Response(200, json={"results": [PARIS]})
            assert request.url.params["latitude"] == "48.85"
            return httpx.Response(200, json=FORECAST)

        result = _run_with(handler, lambda c: execute_get_weather("  Paris ", http_client=c))

        assert result["success"] is True
        assert result["location"] == "Paris, Île-de-France, France"
        assert result["temperature"] == 18.2
        assert result["conditions"] == "Partly cloudy"
        assert result["units"]["temperature"] == "°C"

    def test_unknown_place_is_not_found(self):
        def handler(request):
            return httpx.Response(200, json={"generationtime_ms": 0.3})

        result = _run_with(handler, lambda c: execute_get_weather("Atlantis", http_client=c))

        assert result["success"] is False
        assert result["error"]["code"] == "NOT_FOUND_LOCATION"
        assert result["error"]["message"] == "I couldn't find a place called 'Atlantis'"
        assert result["error"]["tool"] == "get_weather"

    def test_service_error(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        result = _run_with(handler, lambda c: execute_get_weather("Paris", http_client=c))

        assert result["success"] is False
        assert result["error"]["code"].startswith("EXTERNAL_")
        assert "502" in result["error"]["details"]


class TestClock:

    @pytest.mark.parametrize(
        "location, zone",
        [
            ("Tokyo", "Asia/Tokyo"),
            ("new york", "America/New_York"),
            ("Paris, France", "Europe/Paris"),
            ("Europe/Berlin", "Europe/Berlin"),
            ("Buenos Aires", "America/Argentina/Buenos_Aires"),
        ],
    )
    def test_resolve_timezone(self, location, zone):
        assert resolve_timezone(location) == zone

    def test_get_time(self):
        result = execute_get_time("Tokyo")
        assert result["success"] is True
        assert result["timezone"] == "Asia/Tokyo"
        assert result["utc_offset"] == "+0900"
        assert result["abbreviation"] == "JST"

    def test_unknown_location(self):
        result = execute_get_time("Atlantis")
        assert result["success"] is False
        assert result["error"]["code"] == "NOT_FOUND_LOCATION"

    def test_bad_zone_string(self):
        assert resolve_timezone("Mars/Olympus_Mons") is None


class TestStock:

    @pytest.mark.parametrize("raw, expected", [("aapl", "AAPL"), ("$msft", "MSFT"), ("brk.b", "BRK.B")])
    def test_normalize_symbol(self, raw, expected):
        assert normalize_symbol(raw) == expected

    @pytest.mark.parametrize("raw", ["", "apple inc", "12AB", "TOOLONGSYMBOL"])
    def test_invalid_symbol(self, raw):
        with pytest.raises(ValidationError):
            normalize_symbol(raw)

    def test_invalid_symbol_result(self):
        result = asyncio.run(execute_get_stock_price("not a ticker!", config=make_config()))
        assert result["success"] is False
        assert result["error"]["code"] == "VALIDATION_INVALID_FORMAT"

    def test_quote_from_search(self):
        def handler(request):
            assert request.url.params["q"] == "AAPL stock price today"
            return httpx.Response(
                200,
                json={"results": [{"title": "Apple (AAPL)", "url": "https://quotes.test/aapl", "content": "189.20 USD"}]},
            )

        result = _run_with(handler, lambda c: execute_get_stock_price("aapl", config=make_config(), http_client=c))

        assert result["success"] is True
        assert result["symbol"] == "AAPL"
        assert result["sources"][0]["content"] == "189.20 USD"

    def test_no_results_is_not_found(self):
        def handler(request):
            return httpx.Response(200, json={"results": []})

        result = _run_with(handler, lambda c: execute_get_stock_price("ZZZZ", config=make_config(), http_client=c))
        assert result["error"]["code"] == "NOT_FOUND_SYMBOL"


class TestWebSearch:

    def test_json_results_deduplicated(self):
        def handler(request):
            assert str(request.url).startswith("http://searx.test/search")
            assert request.url.params["format"] == "json"
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"title": "A", "url": "https://a.test/page?ref=1", "content": "first"},
                        {"title": "A again", "url": "https://a.test/page/", "content": "dupe"},
                        {"title": "B", "url": "https://b.test", "content": "second"},
                    ]
                },
            )

        result = _run_with(handler, lambda c: execute_web_search("python news", config=make_config(), http_client=c))

        assert result["success"] is True
        assert [r["title"] for r in result["results"]] == ["A", "B"]
        assert result["result_count"] == 2

    def test_html_fallback_when_json_disabled(self):
        formats = []

        def handler(request):
            formats.append(request.url.params.get("format", "html"))
            if request.url.params.get("format") == "json":
                return httpx.Response(403, text="forbidden")
            return httpx.Response(200, text=SEARX_HTML)

        result = _run_with(handler, lambda c: execute_web_search("example", config=make_config(), http_client=c))

        assert formats == ["json", "html"]
        assert result["results"] == [
            {"title": "Example & Co", "url": "https://example.com/a", "content": "Snippet text here"}
        ]

    def test_no_results_message(self):
        def handler(request):
            return httpx.Response(200, json={"results": []})

        result = _run_with(handler, lambda c: execute_web_search("zxqv", config=make_config(), http_client=c))
        assert result["success"] is True
        assert result["results"] == []
        assert "No web results" in result["message"]

    def test_not_configured(self):
        result = asyncio.run(execute_web_search("anything", config=make_config(searxng_url="")))
        assert result["success"] is False
        assert result["error"]["message"] == "Web search is not configured"

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = _run_with(handler, lambda c: execute_web_search("x", config=make_config(), http_client=c))
        assert result["success"] is False
        assert result["error"]["message"] == "Search service unavailable"


class TestChatHistory:

    def test_search_excludes_current_chat(self):
        memory = FakeMemory(
            hits=[memory_hit("I like dogs", chat_id="old-chat"), memory_hit("same chat", chat_id="chat-1")]
        )
        result = asyncio.run(
            execute_search_chat_history("favorite animal", memory=memory, user_id="user-1", chat_id="chat-1")
        )

        assert memory.searches[0]["identity"] == "user-1"
        assert [r["content"] for r in result["results"]] == ["I like dogs"]
        assert result["results"][0]["date"] == "2024-03-01"
        assert result["results"][0]["chat_title"] == "Pets"

    def test_search_nothing_found(self):
        result = asyncio.run(execute_search_chat_history("budget", memory=FakeMemory(), user_id="user-1"))
        assert result["success"] is True
        assert result["results"] == []
        assert "general knowledge" in result["message"]

    def test_memory_unavailable(self):
        result = asyncio.run(execute_search_chat_history("budget", memory=None, user_id="user-1"))
        assert result["success"] is False
        assert result["error"]["code"] == "MEMORY_UNAVAILABLE"

    def test_delete_current_chat(self):
        memory = FakeMemory()
        result = asyncio.run(execute_delete_memory("current_chat", memory=memory, user_id="user-1", chat_id="chat-1"))
        assert result["success"] is True
        assert memory.deleted_chats == [("user-1", "chat-1")]
        assert memory.deleted_users == []

    def test_delete_everything(self):
        memory = FakeMemory()
        asyncio.run(execute_delete_memory("all", memory=memory, user_id="user-1", chat_id="chat-1"))
        assert memory.deleted_users == ["user-1"]
