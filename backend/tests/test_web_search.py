"""Tests for the web search tool collaborator."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from chatrelay.services.web_search import SearxWebSearch, format_results


RESULTS = [
    {"title": f"Result {i}", "url": f"https://example.com/{i}", "content": f"About {i}"}
    for i in range(7)
]


class TestFormatResults:
    def test_top_results_only(self):
        text = format_results("weather", RESULTS, 5)

        assert text.startswith('Search Results for "weather":\n\n')
        assert "Title: Result 0\nURL: https://example.com/0\nDescription: About 0" in text
        assert "Result 4" in text
        assert "Result 5" not in text

    def test_missing_description(self):
        text = format_results("q", [{"title": "T", "url": "u"}], 5)

        assert text.endswith("Description: No description")

    def test_no_results(self):
        assert format_results("q", [], 5) == "No results found."

    def test_only_non_object_results(self):
        assert format_results("q", ["a", None], 5) == "No results found."


class TestSearxWebSearch:
    @pytest.mark.asyncio
    async def test_queries_json_endpoint(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"results": RESULTS[:2]})

        search = SearxWebSearch("http://searx/", transport=httpx.MockTransport(handler))
        text = await search.search("weather")

        assert seen["url"].path == "/search"
        assert seen["url"].params["q"] == "weather"
        assert seen["url"].params["format"] == "json"
        assert "Result 1" in text

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"results": RESULTS[:1]})

        search = SearxWebSearch("http://searx", retries=3, backoff=2.0, transport=httpx.MockTransport(handler))
        with patch("chatrelay.services.web_search.asyncio.sleep", new=AsyncMock()) as sleep:
            text = await search.search("weather")

        assert len(attempts) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]
        assert "Result 0" in text

    @pytest.mark.asyncio
    async def test_gives_up_with_error_text(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        search = SearxWebSearch("http://searx", retries=2, transport=httpx.MockTransport(handler))
        with patch("chatrelay.services.web_search.asyncio.sleep", new=AsyncMock()):
            text = await search.search("weather")

        assert text.startswith("Error performing web search:")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [[], "oops", {"results": "oops"}])
    async def test_unexpected_json_becomes_error_text(self, payload):
        search = SearxWebSearch(
            "http://searx", retries=1,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
        )

        text = await search.search("weather")

        assert text.startswith("Error performing web search:")

    @pytest.mark.asyncio
    async def test_non_object_results_are_skipped(self):
        payload = {"results": ["junk", RESULTS[0]]}
        search = SearxWebSearch(
            "http://searx", transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
        )

        text = await search.search("weather")

        assert "Title: Result 0" in text
        assert "junk" not in text
