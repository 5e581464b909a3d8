"""End-to-end tests for transcription routing through the engine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from conftest import FakeLLMClient, keyword_plugin, write_plugin
from tolk.core.config import Settings
from tolk.core.events import PluginOutput
from tolk.llm.types import StreamEvent, StreamEventType
from tolk.plugins.errors import InvalidResponseError, ScriptFailedError
from tolk.plugins.storage import MemorySecretStore
from tolk.plugins.types import LoadedPlugin, OutputMode, PluginResult, PluginRunResult
from tolk.engine import TolkEngine


class RecordingSink:
    def __init__(self) -> None:
        self.delivered: list[PluginResult] = []
        self.streamed: list[tuple[str, str]] = []
        self.pasted: list[str] = []

    async def deliver(self, result: PluginResult) -> None:
        self.delivered.append(result)

    async def deliver_stream(self, plugin: LoadedPlugin, events: AsyncIterator[StreamEvent]) -> str:
        text = "".join([e.text async for e in events if e.type == StreamEventType.TEXT_DELTA])
        self.streamed.append((plugin.id, text))
        return text

    async def paste(self, text: str) -> None:
        self.pasted.append(text)


def make_engine(settings: Settings, client: FakeLLMClient | None = None) -> tuple[TolkEngine, RecordingSink]:
    sink = RecordingSink()
    engine = TolkEngine(settings, sink, secret_store=MemorySecretStore(), ai_client=client)
    return engine, sink


def add_plugin(engine: TolkEngine, manifest: dict) -> None:
    write_plugin(engine.settings.plugins_dir, manifest)
    engine.manager.set_enabled(manifest["id"], True)
    engine.manager.reload()


@pytest.mark.asyncio
async def test_unmatched_text_passes_through(settings: Settings):
    engine, sink = make_engine(settings)
    outcome = await engine.handle_transcription("just dictating")
    assert outcome.kind == "passthrough"
    assert sink.delivered == [PluginResult(text="just dictating", output_mode=OutputMode.PASTE)]


@pytest.mark.asyncio
async def test_snippet_wins_over_plugins(settings: Settings):
    engine, sink = make_engine(settings)
    add_plugin(engine, keyword_plugin("mail", ["my email"]))
    engine.snippets.add(["my email"], "me@example.com")
    outcome = await engine.handle_transcription("My email")
    assert outcome.kind == "snippet"
    assert sink.delivered[0].text == "me@example.com"


@pytest.mark.asyncio
async def test_plugin_output_delivered_and_published(settings: Settings):
    engine, sink = make_engine(settings)
    add_plugin(
        engine,
        keyword_plugin(
            "shout",
            ["shout"],
            {"type": "script", "inline": 'echo "$OPENTOLK_INPUT" | tr a-z A-Z'},
            output="reply",
        ),
    )
    published: list[PluginOutput] = []
    engine.events.subscribe(PluginOutput, published.append)

    outcome = await engine.handle_transcription("Shout, hello!")
    assert outcome.ok
    assert outcome.kind == "plugin"
    assert outcome.text == "HELLO"
    assert sink.delivered == [PluginResult(text="HELLO", output_mode=OutputMode.REPLY)]
    assert published == [PluginOutput(plugin_id="shout", text="HELLO", output_mode="reply")]


@pytest.mark.asyncio
async def test_plugin_failure_is_an_outcome(settings: Settings):
    engine, sink = make_engine(settings)
    add_plugin(engine, keyword_plugin("bad", ["bad"], {"type": "script", "inline": "exit 4"}))
    outcome = await engine.handle_transcription("bad idea")
    assert outcome.kind == "error"
    assert outcome.plugin_id == "bad"
    assert isinstance(outcome.error, ScriptFailedError)
    assert sink.delivered == []


@pytest.mark.asyncio
async def test_empty_run_result_is_an_error(settings: Settings, monkeypatch):
    engine, sink = make_engine(settings)
    add_plugin(engine, keyword_plugin("hollow", ["hollow"]))

    async def empty_run(match, *args, **kwargs):
        return PluginRunResult(plugin=match.plugin)

    monkeypatch.setattr(engine.runner, "run", empty_run)
    outcome = await engine.handle_transcription("hollow thing")
    assert outcome.kind == "error"
    assert isinstance(outcome.error, InvalidResponseError)
    assert sink.delivered == []


@pytest.mark.asyncio
async def test_streaming_reply(settings: Settings):
    client = FakeLLMClient(stream_chunks=["Sure", "!"])
    engine, sink = make_engine(settings, client)
    add_plugin(
        engine,
        keyword_plugin("chat", ["chat"], {"type": "ai", "systemPrompt": "Chat", "conversational": True}),
    )
    outcome = await engine.handle_transcription("chat can you help")
    assert outcome.text == "Sure!"
    assert outcome.output_mode == OutputMode.REPLY
    assert sink.streamed == [("chat", "Sure!")]
    assert engine.conversations.has_active_conversation("chat")


@pytest.mark.asyncio
async def test_plugins_toggle(settings: Settings):
    settings.plugins_enabled = False
    engine, sink = make_engine(settings)
    add_plugin(engine, keyword_plugin("shout", ["shout"]))
    outcome = await engine.handle_transcription("shout hi")
    assert outcome.kind == "passthrough"


@pytest.mark.asyncio
async def test_ai_client_swap_updates_matcher_and_runner(settings: Settings):
    engine, _ = make_engine(settings)
    client = FakeLLMClient()
    engine.ai_client = client
    assert engine.runner.ai_client is client
    assert engine.matcher.classifier is client


@pytest.mark.asyncio
async def test_start_stop(settings: Settings):
    client = FakeLLMClient()
    engine, _ = make_engine(settings, client)
    await engine.start(watch=False)
    await engine.stop()
    assert client.closed


@pytest.mark.asyncio
async def test_hot_reload_picks_up_new_plugin(settings: Settings):
    settings.reload_debounce_seconds = 0.05
    engine, _ = make_engine(settings)
    await engine.start(watch=True)
    try:
        write_plugin(settings.plugins_dir, keyword_plugin("late", ["late"]))
        for _ in range(100):
            if engine.manager.get("late") is not None:
                break
            await asyncio.sleep(0.05)
        assert engine.manager.get("late") is not None
    finally:
        await engine.stop()
