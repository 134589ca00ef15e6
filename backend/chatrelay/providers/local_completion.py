"""Adapter for local completion daemons speaking the Ollama chat API."""

from typing import AsyncIterator, List, Optional
import json
import logging

import httpx

from chatrelay.core.events import (
    Completed,
    Failed,
    ProviderEvent,
    TextDelta,
    ToolCallRequested,
)
from chatrelay.providers.base import ProviderAdapter
from chatrelay.schemas.chat import ChatTurn, UpstreamTarget

logger = logging.getLogger(__name__)


def _tool_call_payload(call: dict) -> dict:
    function = call.get("function", {})
    arguments = function.get("arguments") or {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            arguments = {}
    return {"function": {"name": function.get("name", ""), "arguments": arguments}}


def to_wire_message(turn: ChatTurn) -> dict:
    message = {"role": turn.role, "content": turn.content}
    if turn.images:
        message["images"] = turn.images
    if turn.tool_calls:
        message["tool_calls"] = [_tool_call_payload(c) for c in turn.tool_calls]
    return message


def parse_line(line: str) -> Optional[dict]:
    """Parse one NDJSON line, or None for blank or malformed input."""
    line = line.strip()
    if not line:
        return None
    try:
        chunk = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Skipping unparseable line from local provider: %.200s", line)
        return None
    if not isinstance(chunk, dict):
        logger.warning("Skipping non-object line from local provider: %.200s", line)
        return None
    return chunk


class LocalCompletionAdapter(ProviderAdapter):
    """
    Talks to POST {baseUrl}/api/chat.

    With tools offered, a single non-streaming request probes for a tool
    call. Without tools, the response is streamed as NDJSON.
    """

    def _request_body(
        self, turns: List[ChatTurn], target: UpstreamTarget, stream: bool, tools
    ) -> dict:
        body = {
            "model": target.config.modelIdentifier,
            "messages": [to_wire_message(t) for t in turns],
            "stream": stream,
            "options": {"num_ctx": target.config.contextWindowTokens},
        }
        if tools:
            body["tools"] = tools
        return body

    def _headers(self, target: UpstreamTarget) -> dict:
        if target.apiKey:
            return {"Authorization": f"Bearer {target.apiKey}"}
        return {}

    def _url(self, target: UpstreamTarget) -> str:
        return f"{target.config.baseUrl.rstrip('/')}/api/chat"

    async def invoke(
        self,
        turns: List[ChatTurn],
        target: UpstreamTarget,
        tools: Optional[List[dict]] = None,
    ) -> AsyncIterator[ProviderEvent]:
        if tools:
            async for event in self._probe(turns, target, tools):
                yield event
        else:
            async for event in self._stream(turns, target):
                yield event

    async def _probe(
        self, turns: List[ChatTurn], target: UpstreamTarget, tools: List[dict]
    ) -> AsyncIterator[ProviderEvent]:
        body = self._request_body(turns, target, stream=False, tools=tools)
        try:
            async with self.http_client() as client:
                response = await client.post(
                    self._url(target), json=body, headers=self._headers(target)
                )
            if response.status_code >= 400:
                yield Failed(reason=f"Local provider returned HTTP {response.status_code}")
                return
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            yield Failed(reason=f"Local provider request failed: {e}")
            return

        if data.get("error"):
            yield Failed(reason=str(data["error"]))
            return

        message = data.get("message") or {}
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            call = _tool_call_payload(tool_calls[0])["function"]
            yield ToolCallRequested(name=call["name"], arguments=call["arguments"])
            return

        if message.get("content"):
            yield TextDelta(text=message["content"])
        yield Completed()

    async def _stream(
        self, turns: List[ChatTurn], target: UpstreamTarget
    ) -> AsyncIterator[ProviderEvent]:
        body = self._request_body(turns, target, stream=True, tools=None)
        try:
            async with self.http_client() as client:
                async with client.stream(
                    "POST", self._url(target), json=body, headers=self._headers(target)
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        yield Failed(
                            reason=f"Local provider returned HTTP {response.status_code}"
                        )
                        return

                    async for line in response.aiter_lines():
                        chunk = parse_line(line)
                        if chunk is None:
                            continue
                        if chunk.get("error"):
                            yield Failed(reason=str(chunk["error"]))
                            return

                        content = (chunk.get("message") or {}).get("content")
                        if content:
                            yield TextDelta(text=content)
                        if chunk.get("done"):
                            yield Completed()
                            return
        except httpx.HTTPError as e:
            yield Failed(reason=f"Local provider stream failed: {e}")
