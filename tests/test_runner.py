"""Tests for the execution dispatcher."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from conftest import FakeLLMClient, install, keyword_plugin
from tolk.core.events import ConversationStarted, EventBus
from tolk.core.logging import AuditLogger
from tolk.llm.errors import NoAPIKeyError
from tolk.llm.types import Role
from tolk.plugins.conversation import ConversationManager
from tolk.plugins.errors import (
    HTTPStatusError,
    MissingFieldError,
    PermissionDeniedError,
    PipelineDepthError,
    PipelinePluginNotFoundError,
    PluginConnectionError,
    PluginTimeoutError,
    ProcessLaunchError,
    ScriptFailedError,
)
from tolk.plugins.manager import PluginManager
from tolk.plugins.permissions import PermissionManager
from tolk.plugins.runner import PluginRunner, script_environment
from tolk.plugins.types import OutputMode, PluginMatch


def match_for(manager: PluginManager, plugin_id: str, input_text: str, trigger_word: str = "go") -> PluginMatch:
    plugin = manager.get(plugin_id)
    assert plugin is not None
    return PluginMatch(
        plugin=plugin,
        trigger=plugin.manifest.trigger,
        trigger_word=trigger_word,
        input=input_text,
        raw_input=f"{trigger_word} {input_text}",
    )


def mock_factory(handler: Any):
    def factory(**kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    return factory


@pytest.fixture
def runner(manager: PluginManager, conversations: ConversationManager) -> PluginRunner:
    return PluginRunner(manager, conversations, default_timeout=10)


class TestScript:
    @pytest.mark.asyncio
    async def test_inline_script_sees_environment(self, manager: PluginManager, runner: PluginRunner):
        install(
            manager,
            keyword_plugin(
                "env",
                ["shout"],
                {
                    "type": "script",
                    "inline": 'echo "$OPENTOLK_INPUT|$OPENTOLK_TRIGGER|$OPENTOLK_SETTINGS_LANG"',
                },
                settings=[{"key": "lang", "default": "en"}],
            ),
        )
        result = await runner.run(match_for(manager, "env", "hi", "shout"))
        assert result.result is not None
        assert result.result.text == "hi|shout|en"
        assert result.result.output_mode == OutputMode.PASTE

    @pytest.mark.asyncio
    async def test_command_script_runs_in_plugin_dir(self, manager: PluginManager, runner: PluginRunner):
        install(
            manager,
            keyword_plugin("cmd", ["go"], {"type": "script", "command": "run.sh"}),
            files={"cmd": {"run.sh": '#!/bin/bash\necho "got $OPENTOLK_INPUT from $(basename "$PWD")"\n'}},
        )
        result = await runner.run(match_for(manager, "cmd", "hi"))
        assert result.result.text == "got hi from cmd.tolkplugin"

    @pytest.mark.asyncio
    async def test_json_output_selects_mode(self, manager: PluginManager, runner: PluginRunner):
        install(
            manager,
            keyword_plugin(
                "j", ["go"], {"type": "script", "inline": """echo '{"text": "hey", "output": "reply"}'"""}
            ),
        )
        result = await runner.run(match_for(manager, "j", ""))
        assert result.result.text == "hey"
        assert result.result.output_mode == OutputMode.REPLY

    @pytest.mark.asyncio
    async def test_timeout(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("slow", ["go"], {"type": "script", "inline": "sleep 5", "timeout": 0.3}))
        with pytest.raises(PluginTimeoutError):
            await runner.run(match_for(manager, "slow", ""))

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("bad", ["go"], {"type": "script", "inline": "echo boom >&2; exit 3"}))
        with pytest.raises(ScriptFailedError) as exc_info:
            await runner.run(match_for(manager, "bad", ""))
        assert exc_info.value.code == 3
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_executable_command_is_typed(self, manager: PluginManager, runner: PluginRunner):
        install(
            manager,
            keyword_plugin("ex", ["go"], {"type": "script", "command": "run"}),
            files={"ex": {"run": "#!/bin/sh\necho hi\n"}},
        )
        (manager.plugins_dir / "ex.tolkplugin" / "run").chmod(0o644)
        with pytest.raises(ProcessLaunchError) as exc_info:
            await runner.run(match_for(manager, "ex", ""))
        assert exc_info.value.kind == "cannot_execute"

    @pytest.mark.asyncio
    async def test_missing_command(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("empty", ["go"], {"type": "script"}))
        with pytest.raises(MissingFieldError):
            await runner.run(match_for(manager, "empty", ""))

    @pytest.mark.asyncio
    async def test_shell_permission_denied(self, manager: PluginManager, conversations: ConversationManager):
        install(manager, keyword_plugin("p", ["go"]))
        runner = PluginRunner(manager, conversations, permissions=PermissionManager(denied=["shell"]))
        with pytest.raises(PermissionDeniedError):
            await runner.run(match_for(manager, "p", ""))

    @pytest.mark.asyncio
    async def test_approval_callback_consulted(self, manager: PluginManager, conversations: ConversationManager):
        install(manager, keyword_plugin("p", ["go"]))
        requests = []

        async def approve(request):
            requests.append(request)
            return False

        runner = PluginRunner(manager, conversations, permissions=PermissionManager(approval_callback=approve))
        with pytest.raises(PermissionDeniedError):
            await runner.run(match_for(manager, "p", ""))
        assert requests[0].plugin_id == "p"
        assert requests[0].permission.value == "shell"

    def test_script_environment(self, manager: PluginManager, tmp_path: Path):
        install(manager, keyword_plugin("e", ["go"]))
        env = script_environment(
            match_for(manager, "e", "x"), {"api_key": "k"}, tmp_path / "data", prefix="OT_"
        )
        assert env["OT_INPUT"] == "x"
        assert env["OT_RAW_INPUT"] == "go x"
        assert env["OT_TRIGGER"] == "go"
        assert env["OT_SETTINGS_API_KEY"] == "k"
        assert env["OT_DATA_DIR"] == str(tmp_path / "data")
        assert env["OT_PLUGIN_DIR"].endswith("e.tolkplugin")


class TestPipeline:
    @pytest.fixture
    def chain(self, manager: PluginManager) -> None:
        install(
            manager,
            keyword_plugin("upper", ["upper"], {"type": "script", "inline": 'echo "$OPENTOLK_INPUT" | tr a-z A-Z'}),
            keyword_plugin("exclaim", ["exclaim"], {"type": "script", "inline": 'echo "${OPENTOLK_INPUT}!"'}),
            keyword_plugin(
                "shout",
                ["shout"],
                {"type": "pipeline", "steps": [{"plugin": "upper"}, {"plugin": "exclaim"}]},
                output={"mode": "reply"},
            ),
        )

    @pytest.mark.asyncio
    async def test_steps_chain_output(self, chain: None, manager: PluginManager, runner: PluginRunner):
        result = await runner.run(match_for(manager, "shout", "hi"))
        assert result.result.text == "HI!"
        assert result.result.output_mode == OutputMode.REPLY

    @pytest.mark.asyncio
    async def test_missing_step(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("p", ["go"], {"type": "pipeline", "steps": [{"plugin": "ghost"}]}))
        with pytest.raises(PipelinePluginNotFoundError):
            await runner.run(match_for(manager, "p", "x"))

    @pytest.mark.asyncio
    async def test_circular_pipeline_hits_depth_guard(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("loop", ["go"], {"type": "pipeline", "steps": [{"plugin": "loop"}]}))
        with pytest.raises(PipelineDepthError):
            await runner.run(match_for(manager, "loop", "x"))

    @pytest.mark.asyncio
    async def test_empty_pipeline_echoes_input(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("noop", ["go"], {"type": "pipeline", "steps": []}))
        result = await runner.run(match_for(manager, "noop", "same"))
        assert result.result.text == "same"


class TestHTTP:
    @pytest.mark.asyncio
    async def test_templated_request_and_json_path(
        self, manager: PluginManager, conversations: ConversationManager
    ):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"result": {"text": "sunny"}})

        install(
            manager,
            keyword_plugin(
                "weather",
                ["weather"],
                {
                    "type": "http",
                    "url": "https://api.test/weather?q={{input}}",
                    "method": "post",
                    "headers": {"X-Key": "{{settings.key}}"},
                    "body": {"city": "{{input}}", "units": "metric"},
                    "responseJsonPath": ".result.text",
                },
                settings=[{"key": "key", "default": "k123"}],
            ),
        )
        runner = PluginRunner(manager, conversations, http_client_factory=mock_factory(handler))
        result = await runner.run(match_for(manager, "weather", "Paris"))

        assert result.result.text == "sunny"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.params["q"] == "Paris"
        assert request.headers["X-Key"] == "k123"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"city": "Paris", "units": "metric"}

    @pytest.mark.asyncio
    async def test_unresolved_path_returns_body(self, manager: PluginManager, conversations: ConversationManager):
        install(
            manager,
            keyword_plugin(
                "h", ["go"], {"type": "http", "url": "https://api.test/", "method": "GET", "responseJsonPath": "nope"}
            ),
        )
        runner = PluginRunner(
            manager, conversations, http_client_factory=mock_factory(lambda r: httpx.Response(200, text="plain body"))
        )
        result = await runner.run(match_for(manager, "h", ""))
        assert result.result.text == "plain body"

    @pytest.mark.asyncio
    async def test_error_status(self, manager: PluginManager, conversations: ConversationManager):
        install(manager, keyword_plugin("h", ["go"], {"type": "http", "url": "https://api.test/"}))
        runner = PluginRunner(
            manager, conversations, http_client_factory=mock_factory(lambda r: httpx.Response(503, text="down"))
        )
        with pytest.raises(HTTPStatusError) as exc_info:
            await runner.run(match_for(manager, "h", ""))
        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "down"

    @pytest.mark.asyncio
    async def test_timeout(self, manager: PluginManager, conversations: ConversationManager):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        install(manager, keyword_plugin("h", ["go"], {"type": "http", "url": "https://api.test/"}))
        runner = PluginRunner(manager, conversations, http_client_factory=mock_factory(handler))
        with pytest.raises(PluginTimeoutError):
            await runner.run(match_for(manager, "h", ""))

    @pytest.mark.asyncio
    async def test_connection_error_is_typed(self, manager: PluginManager, conversations: ConversationManager):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        install(manager, keyword_plugin("h", ["go"], {"type": "http", "url": "https://api.test/"}))
        runner = PluginRunner(manager, conversations, http_client_factory=mock_factory(handler))
        with pytest.raises(PluginConnectionError) as exc_info:
            await runner.run(match_for(manager, "h", ""))
        assert exc_info.value.kind == "connection_error"
        assert exc_info.value.url == "https://api.test/"

    @pytest.mark.asyncio
    async def test_missing_url(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("h", ["go"], {"type": "http"}))
        with pytest.raises(MissingFieldError):
            await runner.run(match_for(manager, "h", ""))


class TestAI:
    @pytest.mark.asyncio
    async def test_single_shot(self, manager: PluginManager, conversations: ConversationManager):
        install(
            manager,
            keyword_plugin(
                "tr",
                ["translate"],
                {"type": "ai", "systemPrompt": "Translate to {{settings.lang}}", "model": "small", "temperature": 0.2},
                settings=[{"key": "lang", "default": "French"}],
            ),
        )
        client = FakeLLMClient(replies=["Bonjour"])
        runner = PluginRunner(manager, conversations, ai_client=client)
        result = await runner.run(match_for(manager, "tr", "hello"))

        assert result.result.text == "Bonjour"
        call = client.calls[0]
        assert call["model"] == "small"
        assert call["temperature"] == 0.2
        assert call["messages"][0].role == Role.SYSTEM
        assert call["messages"][0].content == "Translate to French"
        assert call["messages"][-1].content == "hello"
        assert conversations.messages("tr") == []

    @pytest.mark.asyncio
    async def test_system_prompt_file(self, manager: PluginManager, conversations: ConversationManager):
        install(
            manager,
            keyword_plugin("f", ["go"], {"type": "ai", "systemPromptFile": "prompt.txt"}),
            files={"f": {"prompt.txt": "You answer about {{input}}."}},
        )
        client = FakeLLMClient(replies=["ok"])
        await PluginRunner(manager, conversations, ai_client=client).run(match_for(manager, "f", "cats"))
        assert client.calls[0]["messages"][0].content == "You answer about cats."

    @pytest.mark.asyncio
    async def test_no_client(self, manager: PluginManager, runner: PluginRunner):
        install(manager, keyword_plugin("a", ["go"], {"type": "ai", "systemPrompt": "x"}))
        with pytest.raises(NoAPIKeyError):
            await runner.run(match_for(manager, "a", "hi"))

    @pytest.mark.asyncio
    async def test_missing_prompt(self, manager: PluginManager, conversations: ConversationManager):
        install(manager, keyword_plugin("a", ["go"], {"type": "ai"}))
        runner = PluginRunner(manager, conversations, ai_client=FakeLLMClient())
        with pytest.raises(MissingFieldError):
            await runner.run(match_for(manager, "a", "hi"))

    @pytest.mark.asyncio
    async def test_conversational_stream_records_history(
        self, manager: PluginManager, conversations: ConversationManager
    ):
        install(
            manager,
            keyword_plugin("chat", ["chat"], {"type": "ai", "systemPrompt": "Chat", "conversational": True}),
        )
        events = EventBus()
        started: list[ConversationStarted] = []
        events.subscribe(ConversationStarted, started.append)
        client = FakeLLMClient(stream_chunks=["Hel", "lo"])
        runner = PluginRunner(manager, conversations, ai_client=client, events=events)

        first = await runner.run(match_for(manager, "chat", "hi"))
        assert first.is_stream
        assert await first.collect_text() == "Hello"
        assert [m.content for m in conversations.messages("chat")] == ["hi", "Hello"]

        second = await runner.run(match_for(manager, "chat", "again"))
        await second.collect_text()
        sent = [m.content for m in client.calls[1]["messages"]]
        assert sent == ["Chat", "hi", "Hello", "again"]
        assert len(started) == 1

    @pytest.mark.asyncio
    async def test_streaming_can_be_disabled(self, manager: PluginManager, conversations: ConversationManager):
        install(
            manager,
            keyword_plugin(
                "chat",
                ["chat"],
                {"type": "ai", "systemPrompt": "Chat", "conversational": True, "streaming": False},
            ),
        )
        runner = PluginRunner(manager, conversations, ai_client=FakeLLMClient(replies=["sure"]))
        result = await runner.run(match_for(manager, "chat", "hi"))
        assert not result.is_stream
        assert [m.content for m in conversations.messages("chat")] == ["hi", "sure"]


@pytest.mark.asyncio
async def test_runs_are_audited(manager: PluginManager, conversations: ConversationManager, tmp_path: Path):
    install(manager, keyword_plugin("a", ["go"], {"type": "script", "inline": "echo done"}))
    install(manager, keyword_plugin("b", ["go"], {"type": "script", "inline": "exit 1"}))
    audit_path = tmp_path / "logs" / "audit.jsonl"
    runner = PluginRunner(manager, conversations, audit=AuditLogger(audit_path))

    await runner.run(match_for(manager, "a", "x"))
    with pytest.raises(ScriptFailedError):
        await runner.run(match_for(manager, "b", "x"))

    entries = [json.loads(line) for line in audit_path.read_text().splitlines()]
    assert [e["event_type"] for e in entries] == ["plugin_run", "plugin_error"]
    assert entries[0]["plugin_id"] == "a"
    assert entries[0]["output"]["text"] == "done"
    assert entries[1]["error"].startswith("non_zero_exit: Script exited with code 1")
    assert entries[0]["duration_ms"] >= 0
