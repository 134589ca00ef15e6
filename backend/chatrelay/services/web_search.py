"""Outbound web search offered to models as a tool."""

from abc import ABC, abstractmethod
from typing import Optional
import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


WEB_SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": (
            "Search the internet for information when you do not know the "
            "answer or need current events."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The search query to send to the search engine.",
                }
            },
            "required": ["query"],
        },
    },
}


class WebSearch(ABC):
    @abstractmethod
    async def search(self, query: str) -> str:
        """Return result text for the model. Must not raise."""
        ...


def format_results(query: str, results: list, limit: int) -> str:
    results = [r for r in results if isinstance(r, dict)]
    if not results:
        return "No results found."

    blocks = [
        f"Title: {r.get('title', '')}\n"
        f"URL: {r.get('url', '')}\n"
        f"Description: {r.get('content') or r.get('description') or 'No description'}"
        for r in results[:limit]
    ]
    return f'Search Results for "{query}":\n\n' + "\n\n".join(blocks)


class SearxWebSearch(WebSearch):
    """Query a SearXNG-compatible JSON search endpoint."""

    def __init__(
        self,
        base_url: str,
        max_results: int = 5,
        retries: int = 3,
        backoff: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results
        self.retries = max(1, retries)
        self.backoff = backoff
        self.transport = transport

    async def _fetch(self, query: str) -> list:
        async with httpx.AsyncClient(transport=self.transport, timeout=30.0) as client:
            response = await client.get(
                f"{self.base_url}/search",
                params={"q": query, "format": "json", "safesearch": 1},
            )
            response.raise_for_status()
            data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected search response: {type(data).__name__}")
        results = data.get("results") or []
        if not isinstance(results, list):
            raise ValueError("Unexpected search results payload")
        return results

    async def search(self, query: str) -> str:
        delay = self.backoff
        for attempt in range(1, self.retries + 1):
            logger.info("Web search for %r (attempt %d/%d)", query, attempt, self.retries)
            try:
                results = await self._fetch(query)
                return format_results(query, results, self.max_results)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Web search error (attempt %d): %s", attempt, e)
                if attempt == self.retries:
                    return f"Error performing web search: {e}"
                await asyncio.sleep(delay)
                delay *= 2
        return "No results found."
