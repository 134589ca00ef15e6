"""Adapter for OpenAI-compatible chat completion APIs."""

from typing import AsyncIterator, Dict, List, Optional
import json
import logging

import httpx
import openai
from openai import AsyncOpenAI

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

# Returned by parse_event_line for the "data: [DONE]" line
DONE = object()

# Base64 prefixes of common image signatures
_IMAGE_SIGNATURES = {
    "/9j/": "image/jpeg",
    "iVBORw0KGgo": "image/png",
    "R0lGOD": "image/gif",
    "UklGR": "image/webp",
}


def sniff_image_type(payload: str) -> str:
    for prefix, mimetype in _IMAGE_SIGNATURES.items():
        if payload.startswith(prefix):
            return mimetype
    return "image/jpeg"


def to_wire_message(turn: ChatTurn) -> dict:
    if turn.role == "tool":
        return {"role": "tool", "tool_call_id": turn.tool_call_id, "content": turn.content}

    if turn.images:
        content = [{"type": "text", "text": turn.content}]
        for image in turn.images:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{sniff_image_type(image)};base64,{image}"},
                }
            )
        message = {"role": turn.role, "content": content}
    else:
        message = {"role": turn.role, "content": turn.content}

    if turn.tool_calls:
        message["tool_calls"] = turn.tool_calls
    return message


def api_base_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    return base if base.endswith("/v1") else f"{base}/v1"


def parse_event_line(line: str):
    """
    Decode one SSE line.

    Returns DONE for the end sentinel, a chunk dict for a data line, or
    None for blank lines, comments, other fields and malformed payloads.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if payload == "[DONE]":
        return DONE
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping unparseable SSE payload: %.200s", payload)
        return None
    if not isinstance(chunk, dict):
        return None
    return chunk


class _PendingToolCall:
    """Argument fragments of one indexed tool call slot."""

    def __init__(self):
        self.call_id: Optional[str] = None
        self.name = ""
        self.arguments = ""

    def add(self, fragment: dict) -> None:
        if fragment.get("id"):
            self.call_id = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            self.name += function["name"]
        if function.get("arguments"):
            self.arguments += function["arguments"]

    def to_event(self) -> ToolCallRequested:
        try:
            arguments = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            logger.warning("Tool call %s has malformed arguments: %.200s", self.name, self.arguments)
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        return ToolCallRequested(name=self.name, arguments=arguments, call_id=self.call_id)


def _flush(pending: Dict[int, _PendingToolCall]) -> List[ToolCallRequested]:
    events = [pending[index].to_event() for index in sorted(pending)]
    pending.clear()
    return events


class OpenAICompatibleAdapter(ProviderAdapter):
    """
    Streams /v1/chat/completions through the openai client.

    The raw event stream is read line by line so the [DONE] sentinel is
    seen. It completes any tool call still being assembled and ends the
    exchange, whether or not a finish_reason arrived first.
    """

    def __init__(
        self,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        default_max_tokens: int = 4096,
    ):
        super().__init__(connect_timeout=connect_timeout, transport=transport)
        self.default_max_tokens = default_max_tokens

    def _client(self, target: UpstreamTarget) -> AsyncOpenAI:
        client_config = {
            "api_key": target.apiKey or "not-needed",
            "base_url": api_base_url(target.config.baseUrl),
            "max_retries": 0,
            "http_client": self.http_client(),
        }
        return AsyncOpenAI(**client_config)

    async def invoke(
        self,
        turns: List[ChatTurn],
        target: UpstreamTarget,
        tools: Optional[List[dict]] = None,
    ) -> AsyncIterator[ProviderEvent]:
        request = {
            "model": target.config.modelIdentifier,
            "messages": [to_wire_message(t) for t in turns],
            "stream": True,
            "max_tokens": target.config.contextWindowTokens or self.default_max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        pending: Dict[int, _PendingToolCall] = {}
        finished = False

        try:
            async with self._client(target) as client:
                async with client.chat.completions.with_streaming_response.create(
                    **request
                ) as response:
                    async for line in response.iter_lines():
                        chunk = parse_event_line(line)
                        if chunk is None:
                            continue

                        if chunk is DONE:
                            for event in _flush(pending):
                                yield event
                            yield Completed()
                            return

                        if chunk.get("error"):
                            yield Failed(reason=f"OpenAI-compatible provider error: {chunk['error']}")
                            return

                        choices = chunk.get("choices") or []
                        if not choices:
                            continue
                        choice = choices[0]
                        delta = choice.get("delta") or {}

                        for fragment in delta.get("tool_calls") or []:
                            pending.setdefault(fragment.get("index", 0), _PendingToolCall()).add(fragment)

                        if delta.get("content"):
                            # A text delta closes any tool call still being assembled
                            for event in _flush(pending):
                                yield event
                            yield TextDelta(text=delta["content"])

                        if choice.get("finish_reason"):
                            finished = True
                            for event in _flush(pending):
                                yield event
        except (openai.APIError, httpx.HTTPError) as e:
            yield Failed(reason=f"OpenAI-compatible provider failed: {e}")
            return

        # Stream closed without the sentinel
        if pending:
            logger.warning("Dropping %d tool call(s) cut off before the stream finished", len(pending))
        if finished:
            yield Completed()
