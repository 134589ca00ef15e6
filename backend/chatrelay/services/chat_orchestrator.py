"""
Drive one chat exchange from validated request to persisted record.

An exchange runs as its own asyncio task that pushes SSE frames onto a
queue. The HTTP response only drains that queue, so a client that goes
away stops reading frames without stopping generation or persistence.
"""

from typing import AsyncIterator, Dict, List, Optional, Set
import asyncio
import json
import logging
import uuid

from chatrelay.core.errors import (
    ChatRequestError,
    UnsupportedProviderError,
    UpstreamUnavailableError,
)
from chatrelay.core.events import (
    Completed,
    Failed,
    TextDelta,
    ToolCallRequested,
)
from chatrelay.providers.base import ProviderAdapter
from chatrelay.schemas.chat import (
    Attachment,
    ChatExchangeRequest,
    ChatTurn,
    ProviderKind,
    SessionDefaults,
    UpstreamTarget,
)
from chatrelay.services.attachment_extractor import AttachmentExtractor
from chatrelay.services.conversation_store import ConversationStore
from chatrelay.services.credential_vault import CredentialVault
from chatrelay.services.prompts import (
    SEARCHING_STATUS,
    append_file_context,
    build_persona_instruction,
    session_title,
)
from chatrelay.services.provider_config import ProviderConfigResolver
from chatrelay.services.web_search import WEB_SEARCH_TOOL, WebSearch

logger = logging.getLogger(__name__)


def sse_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def text_frame(text: str) -> str:
    return sse_frame({"message": {"content": text}, "done": False})


DONE_FRAME = sse_frame({"message": {"content": ""}, "done": True})


class StreamAccumulator:
    """Per-exchange record of what the assistant produced."""

    def __init__(self, user_content: str, attachments: List[Attachment], images: List[str]):
        self.user_content = user_content
        self.attachments = attachments
        self.images = images
        self.parts: List[str] = []
        self.completed = False
        self.persisted = False

    def add(self, text: str) -> None:
        self.parts.append(text)

    def restart(self) -> None:
        """Forget text produced before a tool call; only the answer is kept."""
        self.parts.clear()

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def should_persist(self) -> bool:
        return not self.persisted and (self.completed or bool(self.parts))


class ChatExchange:
    """Handle the HTTP layer uses to read frames of a running exchange."""

    def __init__(self, session_id: str, is_new_session: bool):
        self.session_id = session_id
        self.is_new_session = is_new_session
        self.task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, frame: str) -> None:
        self._queue.put_nowait(frame)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class SessionLocks:
    """In-memory per-session mutexes, dropped when nobody waits on them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    async def acquire(self, session_id: str) -> None:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(session_id)
            raise

    def release(self, session_id: str) -> None:
        self._locks[session_id].release()
        self._forget(session_id)

    def _forget(self, session_id: str) -> None:
        self._users[session_id] -= 1
        if self._users[session_id] == 0:
            del self._users[session_id]
            del self._locks[session_id]

    def __len__(self) -> int:
        return len(self._locks)


class ChatOrchestrator:
    """Provider-agnostic streaming chat exchanges with exactly-once persistence."""

    def __init__(
        self,
        store: ConversationStore,
        resolver: ProviderConfigResolver,
        extractor: AttachmentExtractor,
        vault: CredentialVault,
        adapters: Dict[ProviderKind, ProviderAdapter],
        web_search: Optional[WebSearch] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.extractor = extractor
        self.vault = vault
        self.adapters = adapters
        self.web_search = web_search
        self.locks = SessionLocks()
        self._tasks: Set[asyncio.Task] = set()

    # Preprocessing

    @staticmethod
    def prepare_turns(
        prior_turns: List[ChatTurn], personalization_prompt: Optional[str]
    ) -> List[ChatTurn]:
        """Copy the caller's turns and inject the persona system turn once."""
        turns = [turn.model_copy(deep=True) for turn in prior_turns]
        if not personalization_prompt:
            return turns

        instruction = build_persona_instruction(personalization_prompt)
        if turns and turns[0].role == "system":
            turns[0].content = f"{turns[0].content}\n\n{instruction}"
        else:
            turns.insert(0, ChatTurn(role="system", content=instruction))
        return turns

    async def _attach_files(self, request: ChatExchangeRequest, turns: List[ChatTurn]):
        """Fold uploaded files into the last user turn.

        Returns the attachment metadata and image payloads to persist.
        """
        attachments = [
            Attachment(filename=f.filename, path=f.path, mimetype=f.mimetype)
            for f in request.attachment_files
        ]
        if not request.attachment_files:
            return attachments, []

        if not turns or turns[-1].role != "user":
            raise ChatRequestError("Attachments require the last message to be a user message")

        images: List[str] = []
        file_context = ""
        for file in request.attachment_files:
            image, text = await asyncio.to_thread(self.extractor.load, file)
            if image is not None:
                images.append(image)
            if text is not None:
                file_context += text + "\n\n"

        last = turns[-1]
        if file_context:
            last.content = append_file_context(last.content, file_context)
        if images:
            last.images = list(last.images) + images
        return attachments, images

    @staticmethod
    def _last_user_content(turns: List[ChatTurn]) -> str:
        for turn in reversed(turns):
            if turn.role == "user":
                return turn.content
        return ""

    # Exchange lifecycle

    async def start(self, request: ChatExchangeRequest) -> ChatExchange:
        """
        Begin an exchange and return once the upstream produced its first event.

        Raises:
            ChatRequestError: attachments without a trailing user turn
            UnsupportedProviderError: the model's provider kind has no adapter
            UpstreamUnavailableError: the provider failed before streaming
        """
        turns = self.prepare_turns(request.prior_turns, request.personalization_prompt)
        user_content = self._last_user_content(turns)
        attachments, images = await self._attach_files(request, turns)

        config = await self.resolver.resolve(request.model)
        kind = ProviderKind.parse(config.providerKind)
        adapter = self.adapters.get(kind)
        if adapter is None:
            raise UnsupportedProviderError(kind.value)

        api_key = self.vault.decrypt(config.encryptedApiKey) if config.encryptedApiKey else None
        target = UpstreamTarget(config=config, apiKey=api_key)

        is_new_session = not request.session_id
        session_id = request.session_id or str(uuid.uuid4())

        tools = [WEB_SEARCH_TOOL] if self.web_search is not None else None

        await self.locks.acquire(session_id)
        try:
            events = adapter.invoke(turns, target, tools)
            first = await anext(events, None)
            if first is None or isinstance(first, Failed):
                await events.aclose()
                reason = first.reason if first is not None else "empty upstream response"
                logger.error("Provider error for model %s: %s", request.model, reason)
                raise UpstreamUnavailableError(reason)
        except BaseException:
            self.locks.release(session_id)
            raise

        exchange = ChatExchange(session_id, is_new_session)
        if is_new_session:
            exchange.push(sse_frame({"sessionId": session_id}))

        accumulator = StreamAccumulator(user_content, attachments, images)
        defaults = SessionDefaults(
            model=request.model,
            title=session_title(user_content),
            userId=request.caller_user_id,
        )

        task = asyncio.create_task(
            self._drive(exchange, accumulator, defaults, adapter, turns, target, events, first)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        exchange.task = task
        return exchange

    async def _drive(
        self,
        exchange: ChatExchange,
        accumulator: StreamAccumulator,
        defaults: SessionDefaults,
        adapter: ProviderAdapter,
        turns: List[ChatTurn],
        target: UpstreamTarget,
        events,
        first,
    ) -> None:
        tool_hop_used = False
        pending = first
        try:
            while True:
                event = pending if pending is not None else await anext(events, None)
                pending = None
                if event is None:
                    break

                if isinstance(event, TextDelta):
                    accumulator.add(event.text)
                    exchange.push(text_frame(event.text))

                elif isinstance(event, ToolCallRequested):
                    if tool_hop_used or self.web_search is None:
                        logger.warning(
                            "Ignoring tool call %s in session %s: one tool hop per exchange",
                            event.name, exchange.session_id,
                        )
                        continue
                    tool_hop_used = True
                    accumulator.restart()
                    await events.aclose()
                    await self._run_web_search(exchange, turns, event)
                    events = adapter.invoke(turns, target, None)

                elif isinstance(event, Completed):
                    accumulator.completed = True
                    exchange.push(DONE_FRAME)
                    break

                elif isinstance(event, Failed):
                    logger.error(
                        "Upstream failed mid-stream in session %s: %s",
                        exchange.session_id, event.reason,
                    )
                    break
        except Exception:
            logger.exception("Chat exchange for session %s aborted", exchange.session_id)
        finally:
            try:
                await events.aclose()
            except Exception:
                logger.exception("Error closing upstream stream for session %s", exchange.session_id)
            exchange.close()
            await self._persist(exchange.session_id, accumulator, defaults)
            self.locks.release(exchange.session_id)

    async def _run_web_search(
        self, exchange: ChatExchange, turns: List[ChatTurn], event: ToolCallRequested
    ) -> None:
        """Answer a web_search tool call and extend the turn sequence in place."""
        exchange.push(text_frame(SEARCHING_STATUS))

        query = str(event.arguments.get("query", ""))
        logger.info("Model requested web search %r in session %s", query, exchange.session_id)
        try:
            result = await self.web_search.search(query)
        except Exception as e:
            logger.exception("Web search collaborator raised for session %s", exchange.session_id)
            result = f"Error performing web search: {e}"

        call_id = event.call_id or f"call_{uuid.uuid4().hex[:24]}"
        turns.append(
            ChatTurn(
                role="assistant",
                content="",
                tool_calls=[
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": event.name,
                            "arguments": json.dumps(event.arguments),
                        },
                    }
                ],
            )
        )
        turns.append(ChatTurn(role="tool", content=result, tool_call_id=call_id))

    async def _persist(
        self, session_id: str, accumulator: StreamAccumulator, defaults: SessionDefaults
    ) -> None:
        if not accumulator.should_persist():
            return
        accumulator.persisted = True

        user_turn = ChatTurn(
            role="user",
            content=accumulator.user_content,
            attachments=accumulator.attachments,
            images=accumulator.images,
        )
        assistant_turn = ChatTurn(role="assistant", content=accumulator.text)
        try:
            await self.store.upsert_append(session_id, defaults, [user_turn, assistant_turn])
        except Exception:
            logger.exception("Error saving chat to DB for session %s", session_id)

    async def wait_idle(self) -> None:
        """Wait for every running exchange to finish persisting."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
