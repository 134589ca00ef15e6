"""
Tests for the streaming chat orchestrator.

These tests drive full exchanges against scripted provider adapters and
verify:
1. Client frames (session id first, deltas in order, terminal done frame)
2. Exactly one persisted user/assistant pair per exchange
3. Partial persistence on mid-stream failure, none on pre-stream failure
4. The single web_search tool hop
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock

import pytest

from chatrelay.core.errors import (
    ChatRequestError,
    UnsupportedProviderError,
    UpstreamUnavailableError,
)
from chatrelay.core.events import Completed, Failed, TextDelta, ToolCallRequested
from chatrelay.providers.base import ProviderAdapter
from chatrelay.schemas.chat import (
    AttachmentFile,
    ChatExchangeRequest,
    ChatTurn,
    ProviderConfig,
    ProviderKind,
)
from chatrelay.services.attachment_extractor import AttachmentExtractor
from chatrelay.services.chat_orchestrator import ChatOrchestrator, SessionLocks
from chatrelay.services.credential_vault import CredentialVault
from chatrelay.services.prompts import ATTACHMENTS_HEADING, SEARCHING_STATUS


class ScriptedAdapter(ProviderAdapter):
    """Replays one list of events per invocation and records each call."""

    def __init__(self, *scripts):
        super().__init__()
        self.scripts = list(scripts)
        self.calls = []

    async def invoke(self, turns, target, tools=None):
        self.calls.append(
            {
                "turns": [t.model_copy(deep=True) for t in turns],
                "target": target,
                "tools": tools,
            }
        )
        for event in self.scripts.pop(0):
            if isinstance(event, asyncio.Event):
                await event.wait()
                continue
            yield event


def make_orchestrator(adapter, provider="ollama", web_search=None, api_key=None):
    store = AsyncMock()
    resolver = AsyncMock()
    resolver.resolve.return_value = ProviderConfig(
        displayName="M1",
        modelIdentifier="m1",
        providerKind=provider,
        baseUrl="http://upstream",
        encryptedApiKey=api_key,
        contextWindowTokens=8192,
    )
    orchestrator = ChatOrchestrator(
        store=store,
        resolver=resolver,
        extractor=AttachmentExtractor(),
        vault=CredentialVault(None),
        adapters={
            ProviderKind.LOCAL_COMPLETION: adapter,
            ProviderKind.OPENAI_COMPATIBLE: adapter,
        },
        web_search=web_search,
    )
    return orchestrator, store


def user_request(text="hi", **kwargs):
    return ChatExchangeRequest(
        model="m1",
        prior_turns=[ChatTurn(role="user", content=text)],
        **kwargs,
    )


def decode(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


async def run_exchange(orchestrator, request):
    exchange = await orchestrator.start(request)
    frames = [decode(f) async for f in exchange.frames()]
    await exchange.task
    return exchange, frames


def persisted(store):
    """(session_id, defaults, turns) of the single upsert call."""
    store.upsert_append.assert_awaited_once()
    return store.upsert_append.await_args.args


class TestStreamingExchange:
    """Frames sent to the client and the record written afterwards."""

    @pytest.mark.asyncio
    async def test_new_session_streams_and_persists(self):
        adapter = ScriptedAdapter([TextDelta(text="Hel"), TextDelta(text="lo"), Completed()])
        orchestrator, store = make_orchestrator(adapter)

        exchange, frames = await run_exchange(orchestrator, user_request("hi"))

        assert frames == [
            {"sessionId": exchange.session_id},
            {"message": {"content": "Hel"}, "done": False},
            {"message": {"content": "lo"}, "done": False},
            {"message": {"content": ""}, "done": True},
        ]

        session_id, defaults, turns = persisted(store)
        assert session_id == exchange.session_id
        assert defaults.model == "m1"
        assert defaults.title == "hi"
        assert [t.role for t in turns] == ["user", "assistant"]
        assert turns[0].content == "hi"
        assert turns[1].content == "Hello"

    @pytest.mark.asyncio
    async def test_dropped_stream_persists_partial_text(self):
        adapter = ScriptedAdapter([TextDelta(text="Hel")])
        orchestrator, store = make_orchestrator(adapter)

        _, frames = await run_exchange(orchestrator, user_request())

        assert frames[-1] == {"message": {"content": "Hel"}, "done": False}
        assert not any(f.get("done") for f in frames)
        _, _, turns = persisted(store)
        assert turns[1].content == "Hel"

    @pytest.mark.asyncio
    async def test_mid_stream_failure_persists_partial_text(self):
        adapter = ScriptedAdapter(
            [TextDelta(text="par"), TextDelta(text="tial"), Failed(reason="reset"), TextDelta(text="x")]
        )
        orchestrator, store = make_orchestrator(adapter)

        _, frames = await run_exchange(orchestrator, user_request())

        assert not any(f.get("done") for f in frames)
        _, _, turns = persisted(store)
        assert turns[1].content == "partial"

    @pytest.mark.asyncio
    async def test_existing_session_gets_no_session_frame(self):
        adapter = ScriptedAdapter([TextDelta(text="ok"), Completed()])
        orchestrator, store = make_orchestrator(adapter)

        exchange, frames = await run_exchange(orchestrator, user_request(session_id="s-1"))

        assert exchange.session_id == "s-1"
        assert exchange.is_new_session is False
        assert all("sessionId" not in f for f in frames)
        assert persisted(store)[0] == "s-1"

    @pytest.mark.asyncio
    async def test_session_frame_precedes_every_delta(self):
        adapter = ScriptedAdapter([TextDelta(text="a"), TextDelta(text="b"), Completed()])
        orchestrator, _ = make_orchestrator(adapter)

        _, frames = await run_exchange(orchestrator, user_request())

        session_frames = [i for i, f in enumerate(frames) if "sessionId" in f]
        assert session_frames == [0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "deltas",
        [
            ["a"],
            ["Hel", "lo", ", ", "world"],
            [" leading", "", "trailing "],
            ["ü", "ñ", "💬"],
        ],
    )
    async def test_persisted_text_is_ordered_concatenation(self, deltas):
        adapter = ScriptedAdapter([TextDelta(text=d) for d in deltas] + [Completed()])
        orchestrator, store = make_orchestrator(adapter)

        await run_exchange(orchestrator, user_request())

        _, _, turns = persisted(store)
        assert turns[1].content == "".join(deltas)

    @pytest.mark.asyncio
    async def test_completed_without_text_still_persists(self):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, store = make_orchestrator(adapter)

        await run_exchange(orchestrator, user_request())

        _, _, turns = persisted(store)
        assert turns[1].content == ""

    @pytest.mark.asyncio
    async def test_persists_when_client_never_reads(self):
        adapter = ScriptedAdapter([TextDelta(text="unseen"), Completed()])
        orchestrator, store = make_orchestrator(adapter)

        exchange = await orchestrator.start(user_request())
        await exchange.task

        _, _, turns = persisted(store)
        assert turns[1].content == "unseen"

    @pytest.mark.asyncio
    async def test_persistence_error_does_not_break_stream(self):
        adapter = ScriptedAdapter([TextDelta(text="ok"), Completed()])
        orchestrator, store = make_orchestrator(adapter)
        store.upsert_append.side_effect = RuntimeError("disk full")

        _, frames = await run_exchange(orchestrator, user_request())

        assert frames[-1] == {"message": {"content": ""}, "done": True}
        store.upsert_append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_user_turn_persisted_from_last_user_entry(self):
        adapter = ScriptedAdapter([TextDelta(text="4"), Completed()])
        orchestrator, store = make_orchestrator(adapter)
        request = ChatExchangeRequest(
            model="m1",
            prior_turns=[
                ChatTurn(role="user", content="first"),
                ChatTurn(role="assistant", content="reply"),
                ChatTurn(role="user", content="2+2?"),
            ],
            session_id="s-2",
        )

        await run_exchange(orchestrator, request)

        _, _, turns = persisted(store)
        assert turns[0].content == "2+2?"

    @pytest.mark.asyncio
    async def test_owner_recorded_on_insert_defaults(self):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, store = make_orchestrator(adapter)

        await run_exchange(orchestrator, user_request(caller_user_id="u-9"))

        _, defaults, _ = persisted(store)
        assert defaults.userId == "u-9"

    @pytest.mark.asyncio
    async def test_upstream_receives_resolved_target(self):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, _ = make_orchestrator(adapter, api_key="plain-key")

        await run_exchange(orchestrator, user_request())

        target = adapter.calls[0]["target"]
        assert target.config.modelIdentifier == "m1"
        assert target.apiKey == "plain-key"


class TestPreStreamFailures:
    @pytest.mark.asyncio
    async def test_failure_before_first_event_raises(self):
        adapter = ScriptedAdapter([Failed(reason="connection refused")])
        orchestrator, store = make_orchestrator(adapter)

        with pytest.raises(UpstreamUnavailableError):
            await orchestrator.start(user_request())

        store.upsert_append.assert_not_awaited()
        assert len(orchestrator.locks) == 0

    @pytest.mark.asyncio
    async def test_empty_upstream_raises(self):
        adapter = ScriptedAdapter([])
        orchestrator, store = make_orchestrator(adapter)

        with pytest.raises(UpstreamUnavailableError):
            await orchestrator.start(user_request())

        store.upsert_append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_provider_kind(self):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, store = make_orchestrator(adapter, provider="anthropic")

        with pytest.raises(UnsupportedProviderError):
            await orchestrator.start(user_request())

        assert adapter.calls == []
        store.upsert_append.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_files_without_trailing_user_turn(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        adapter = ScriptedAdapter([Completed()])
        orchestrator, _ = make_orchestrator(adapter)
        request = ChatExchangeRequest(
            model="m1",
            prior_turns=[ChatTurn(role="assistant", content="hi")],
            attachment_files=[
                AttachmentFile(filename="notes.txt", path=str(path), mimetype="text/plain")
            ],
        )

        with pytest.raises(ChatRequestError):
            await orchestrator.start(request)

        assert adapter.calls == []


class TestPersonalization:
    """Persona instruction is injected exactly once."""

    def test_inserts_system_turn(self):
        turns = ChatOrchestrator.prepare_turns([ChatTurn(role="user", content="hi")], "Be a pirate")

        assert [t.role for t in turns] == ["system", "user"]
        assert "Be a pirate" in turns[0].content

    def test_empty_history_gets_single_system_turn(self):
        turns = ChatOrchestrator.prepare_turns([], "Be a pirate")

        assert len(turns) == 1
        assert turns[0].role == "system"

    def test_appends_to_existing_system_turn(self):
        prior = [ChatTurn(role="system", content="Base rules"), ChatTurn(role="user", content="hi")]

        turns = ChatOrchestrator.prepare_turns(prior, "Be a pirate")

        assert [t.role for t in turns] == ["system", "user"]
        assert turns[0].content.startswith("Base rules\n\n")
        assert "Be a pirate" in turns[0].content

    def test_repeated_preparation_never_duplicates(self):
        prior = [ChatTurn(role="user", content="hi")]

        ChatOrchestrator.prepare_turns(prior, "Be a pirate")
        turns = ChatOrchestrator.prepare_turns(prior, "Be a pirate")

        assert sum(1 for t in turns if t.role == "system") == 1
        assert turns[0].content.count("Be a pirate") == 1
        assert [t.role for t in prior] == ["user"]

    def test_no_prompt_leaves_turns_alone(self):
        turns = ChatOrchestrator.prepare_turns([ChatTurn(role="user", content="hi")], None)

        assert [t.role for t in turns] == ["user"]

    @pytest.mark.asyncio
    async def test_upstream_sees_one_system_turn(self):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, _ = make_orchestrator(adapter)

        await run_exchange(orchestrator, user_request(personalization_prompt="Be terse"))

        sent = adapter.calls[0]["turns"]
        assert [t.role for t in sent] == ["system", "user"]


class TestAttachments:
    @pytest.mark.asyncio
    async def test_image_goes_to_images_only(self, tmp_path):
        raw = b"\x89PNG\r\n\x1a\nfake-image"
        path = tmp_path / "cat.png"
        path.write_bytes(raw)
        adapter = ScriptedAdapter([TextDelta(text="A cat"), Completed()])
        orchestrator, store = make_orchestrator(adapter)
        request = user_request(
            "describe this",
            attachment_files=[AttachmentFile(filename="cat.png", path=str(path), mimetype="image/png")],
        )

        await run_exchange(orchestrator, request)

        sent_user = adapter.calls[0]["turns"][-1]
        encoded = base64.b64encode(raw).decode("ascii")
        assert sent_user.images == [encoded]
        assert sent_user.content == "describe this"

        _, _, turns = persisted(store)
        assert turns[0].images == [encoded]
        assert turns[0].attachments[0].filename == "cat.png"

    @pytest.mark.asyncio
    async def test_document_text_appended_under_heading(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("The launch is on Friday.")
        adapter = ScriptedAdapter([TextDelta(text="Friday"), Completed()])
        orchestrator, store = make_orchestrator(adapter)
        request = user_request(
            "When is the launch?",
            attachment_files=[AttachmentFile(filename="notes.txt", path=str(path), mimetype="text/plain")],
        )

        await run_exchange(orchestrator, request)

        sent_user = adapter.calls[0]["turns"][-1]
        assert sent_user.content.startswith("When is the launch?\n\n" + ATTACHMENTS_HEADING)
        assert "[Content from Text File: notes.txt]" in sent_user.content
        assert "The launch is on Friday." in sent_user.content

        _, _, turns = persisted(store)
        assert turns[0].content == "When is the launch?"

    @pytest.mark.asyncio
    async def test_unsupported_file_still_completes(self, tmp_path):
        path = tmp_path / "bundle.zip"
        path.write_bytes(b"PK\x03\x04")
        adapter = ScriptedAdapter([TextDelta(text="ok"), Completed()])
        orchestrator, store = make_orchestrator(adapter)
        request = user_request(
            "what is this",
            attachment_files=[
                AttachmentFile(filename="bundle.zip", path=str(path), mimetype="application/zip")
            ],
        )

        _, frames = await run_exchange(orchestrator, request)

        assert frames[-1]["done"] is True
        assert "Content extraction not supported" in adapter.calls[0]["turns"][-1].content
        persisted(store)

    @pytest.mark.asyncio
    async def test_missing_file_degrades_to_placeholder(self, tmp_path):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, store = make_orchestrator(adapter)
        request = user_request(
            "read it",
            attachment_files=[
                AttachmentFile(filename="gone.txt", path=str(tmp_path / "gone.txt"), mimetype="text/plain")
            ],
        )

        await run_exchange(orchestrator, request)

        assert "[Error extracting content from gone.txt]" in adapter.calls[0]["turns"][-1].content
        persisted(store)


class TestWebSearchToolHop:
    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self):
        web_search = AsyncMock()
        web_search.search.return_value = 'Search Results for "weather":\n\nTitle: Sunny'
        adapter = ScriptedAdapter(
            [ToolCallRequested(name="web_search", arguments={"query": "weather"}, call_id="call_1")],
            [TextDelta(text="It is "), TextDelta(text="sunny."), Completed()],
        )
        orchestrator, store = make_orchestrator(adapter, web_search=web_search)

        _, frames = await run_exchange(orchestrator, user_request("weather today?"))

        assert frames[1] == {"message": {"content": SEARCHING_STATUS}, "done": False}
        assert [f["message"]["content"] for f in frames[2:4]] == ["It is ", "sunny."]
        assert frames[-1]["done"] is True

        web_search.search.assert_awaited_once_with("weather")
        assert adapter.calls[0]["tools"][0]["function"]["name"] == "web_search"
        assert adapter.calls[1]["tools"] is None

        follow_up = adapter.calls[1]["turns"]
        assert follow_up[-2].role == "assistant"
        assert follow_up[-2].tool_calls[0]["id"] == "call_1"
        assert json.loads(follow_up[-2].tool_calls[0]["function"]["arguments"]) == {"query": "weather"}
        assert follow_up[-1].role == "tool"
        assert follow_up[-1].tool_call_id == "call_1"
        assert follow_up[-1].content.startswith('Search Results for "weather"')

        _, _, turns = persisted(store)
        assert [t.role for t in turns] == ["user", "assistant"]
        assert turns[1].content == "It is sunny."

    @pytest.mark.asyncio
    async def test_text_before_tool_call_is_not_persisted(self):
        web_search = AsyncMock()
        web_search.search.return_value = "Title: Forecast"
        adapter = ScriptedAdapter(
            [TextDelta(text="Let me check. "), ToolCallRequested(name="web_search", arguments={"query": "weather"})],
            [TextDelta(text="Sunny"), Completed()],
        )
        orchestrator, store = make_orchestrator(adapter, web_search=web_search)

        _, frames = await run_exchange(orchestrator, user_request("weather?"))

        assert frames[-1]["done"] is True
        _, _, turns = persisted(store)
        assert turns[1].content == "Sunny"

    @pytest.mark.asyncio
    async def test_search_error_still_gets_follow_up(self):
        web_search = AsyncMock()
        web_search.search.side_effect = RuntimeError("boom")
        adapter = ScriptedAdapter(
            [ToolCallRequested(name="web_search", arguments={"query": "a"})],
            [TextDelta(text="Sorry"), Completed()],
        )
        orchestrator, store = make_orchestrator(adapter, web_search=web_search)

        _, frames = await run_exchange(orchestrator, user_request())

        assert frames[-1]["done"] is True
        assert adapter.calls[1]["turns"][-1].content.startswith("Error performing web search:")
        _, _, turns = persisted(store)
        assert turns[1].content == "Sorry"

    @pytest.mark.asyncio
    async def test_second_tool_call_is_ignored(self):
        web_search = AsyncMock()
        web_search.search.return_value = "No results found."
        adapter = ScriptedAdapter(
            [ToolCallRequested(name="web_search", arguments={"query": "a"})],
            [ToolCallRequested(name="web_search", arguments={"query": "b"}), TextDelta(text="done"), Completed()],
        )
        orchestrator, store = make_orchestrator(adapter, web_search=web_search)

        await run_exchange(orchestrator, user_request())

        web_search.search.assert_awaited_once_with("a")
        assert len(adapter.calls) == 2
        _, _, turns = persisted(store)
        assert turns[1].content == "done"

    @pytest.mark.asyncio
    async def test_missing_call_id_is_generated(self):
        web_search = AsyncMock()
        web_search.search.return_value = "No results found."
        adapter = ScriptedAdapter(
            [ToolCallRequested(name="web_search", arguments={"query": "a"})],
            [Completed()],
        )
        orchestrator, _ = make_orchestrator(adapter, web_search=web_search)

        await run_exchange(orchestrator, user_request())

        follow_up = adapter.calls[1]["turns"]
        assert follow_up[-2].tool_calls[0]["id"] == follow_up[-1].tool_call_id
        assert follow_up[-1].tool_call_id.startswith("call_")

    @pytest.mark.asyncio
    async def test_tools_not_offered_without_search(self):
        adapter = ScriptedAdapter([Completed()])
        orchestrator, _ = make_orchestrator(adapter)

        await run_exchange(orchestrator, user_request())

        assert adapter.calls[0]["tools"] is None


class TestSessionSerialization:
    @pytest.mark.asyncio
    async def test_same_session_exchanges_run_one_at_a_time(self):
        gate = asyncio.Event()
        adapter = ScriptedAdapter(
            [TextDelta(text="first"), gate, Completed()],
            [TextDelta(text="second"), Completed()],
        )
        orchestrator, store = make_orchestrator(adapter)

        first = await orchestrator.start(user_request("one", session_id="s-1"))
        second_start = asyncio.create_task(orchestrator.start(user_request("two", session_id="s-1")))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not second_start.done()

        gate.set()
        await first.task
        second = await second_start
        await second.task

        contents = [call.args[2][1].content for call in store.upsert_append.await_args_list]
        assert contents == ["first", "second"]
        assert len(orchestrator.locks) == 0

    @pytest.mark.asyncio
    async def test_wait_idle_lets_running_exchange_persist(self):
        gate = asyncio.Event()
        adapter = ScriptedAdapter([TextDelta(text="slow"), gate, Completed()])
        orchestrator, store = make_orchestrator(adapter)

        await orchestrator.start(user_request())
        asyncio.get_running_loop().call_later(0.01, gate.set)
        await orchestrator.wait_idle()

        persisted(store)


class TestSessionLocks:
    @pytest.mark.asyncio
    async def test_lock_is_dropped_after_last_release(self):
        locks = SessionLocks()

        await locks.acquire("s")
        assert len(locks) == 1
        locks.release("s")

        assert len(locks) == 0
