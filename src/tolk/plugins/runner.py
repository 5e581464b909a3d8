"""Execution dispatcher: run a matched plugin according to its execution kind."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import httpx

from tolk.core.events import ConversationStarted, EventBus
from tolk.core.http import HttpClientFactory, make_httpx_client
from tolk.core.logging import AuditLogger
from tolk.llm.base import BaseLLMClient
from tolk.llm.errors import NoAPIKeyError
from tolk.llm.types import ChatMessage, StreamEvent, StreamEventType, ToolCall, ToolResult
from tolk.plugins.conversation import ConversationManager
from tolk.plugins.errors import (
    HTTPStatusError,
    InvalidResponseError,
    MissingFieldError,
    PermissionDeniedError,
    PipelineDepthError,
    PipelinePluginNotFoundError,
    PluginConnectionError,
    PluginTimeoutError,
)
from tolk.plugins.manager import PluginManager
from tolk.plugins.output import (
    extract_json_path,
    parse_output,
    resolve_template,
    resolve_template_value,
)
from tolk.plugins.permissions import PermissionManager, required_for_execution
from tolk.plugins.process import build_argv, child_env, infer_interpreter, run_process
from tolk.plugins.types import (
    AIExecution,
    HTTPExecution,
    LoadedPlugin,
    PipelineExecution,
    PluginMatch,
    PluginResult,
    PluginRunResult,
    ScriptExecution,
    ShortcutExecution,
)

if TYPE_CHECKING:
    from tolk.plugins.tool_runner import PluginToolRunner

logger = logging.getLogger(__name__)


def script_environment(
    match: PluginMatch,
    settings: dict[str, str],
    data_dir: Path,
    prefix: str = "OPENTOLK_",
) -> dict[str, str]:
    """Variables a script plugin sees, on top of the inherited environment."""
    env = {
        f"{prefix}INPUT": match.input,
        f"{prefix}RAW_INPUT": match.raw_input,
        f"{prefix}TRIGGER": match.trigger_word,
        f"{prefix}PLUGIN_DIR": str(match.plugin.directory),
        f"{prefix}DATA_DIR": str(data_dir),
    }
    for key, value in settings.items():
        env[f"{prefix}SETTINGS_{key.upper()}"] = value
    return env


class PluginRunner:
    """Runs plugin matches.

    Failures propagate as typed :class:`~tolk.plugins.errors.PluginError`
    or :class:`~tolk.llm.errors.AIProviderError` exceptions. Nothing is
    retried. Pipelines and ``run_plugin`` tool calls re-enter :meth:`run`
    with an increasing ``depth``.
    """

    def __init__(
        self,
        manager: PluginManager,
        conversations: ConversationManager,
        *,
        ai_client: BaseLLMClient | None = None,
        permissions: PermissionManager | None = None,
        http_client_factory: HttpClientFactory = make_httpx_client,
        audit: AuditLogger | None = None,
        events: EventBus | None = None,
        default_timeout: float = 30.0,
        max_pipeline_depth: int = 8,
        max_tool_rounds: int = 10,
        env_prefix: str = "OPENTOLK_",
        shortcuts_binary: str = "/usr/bin/shortcuts",
    ) -> None:
        self._manager = manager
        self._conversations = conversations
        self.ai_client = ai_client
        self._permissions = permissions or PermissionManager()
        self._http_client_factory = http_client_factory
        self._audit = audit or AuditLogger(None)
        self._events = events
        self._default_timeout = default_timeout
        self._max_depth = max_pipeline_depth
        self._max_tool_rounds = max_tool_rounds
        self._env_prefix = env_prefix
        self._shortcuts_binary = shortcuts_binary
        self.tool_runner: PluginToolRunner | None = None

    @property
    def manager(self) -> PluginManager:
        return self._manager

    @property
    def env_prefix(self) -> str:
        return self._env_prefix

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    async def run(
        self,
        match: PluginMatch,
        history: list[ChatMessage] | None = None,
        *,
        depth: int = 0,
    ) -> PluginRunResult:
        """Execute ``match`` once and return a result or a text stream."""
        if depth > self._max_depth:
            raise PipelineDepthError(self._max_depth)

        plugin = match.plugin
        permission = required_for_execution(plugin)
        if permission is not None and not await self._permissions.check(plugin, permission):
            raise PermissionDeniedError(permission.value, plugin.id)

        settings = self._manager.resolved_settings(plugin)
        execution = plugin.manifest.execution
        start = time.monotonic()
        try:
            if isinstance(execution, ScriptExecution):
                result = await self._run_script(match, execution, settings)
            elif isinstance(execution, HTTPExecution):
                result = await self._run_http(match, execution, settings)
            elif isinstance(execution, ShortcutExecution):
                result = await self._run_shortcut(match, execution)
            elif isinstance(execution, AIExecution):
                run_result = await self._run_ai(match, execution, settings, history, depth)
                self._audit_run(plugin, match, start, run_result.result, streamed=run_result.is_stream)
                return run_result
            elif isinstance(execution, PipelineExecution):
                result = await self._run_pipeline(match, execution, depth)
            else:
                raise InvalidResponseError(f"Unsupported execution type: {execution.type}")
        except Exception as e:
            self._audit.plugin_error(plugin.id, input_text=match.input, error=e, started=start)
            raise

        self._audit_run(plugin, match, start, result)
        return PluginRunResult(plugin=plugin, result=result)

    def _audit_run(
        self,
        plugin: LoadedPlugin,
        match: PluginMatch,
        start: float,
        result: PluginResult | None,
        streamed: bool = False,
    ) -> None:
        output = {"streamed": True} if streamed else {
            "text": result.text if result else "",
            "output_mode": result.output_mode.value if result else "",
        }
        self._audit.plugin_run(
            plugin.id, input_text=match.input, trigger_word=match.trigger_word, output=output, started=start
        )

    # --- Script ---

    async def _run_script(
        self, match: PluginMatch, config: ScriptExecution, settings: dict[str, str]
    ) -> PluginResult:
        plugin = match.plugin
        timeout = config.timeout or self._default_timeout
        data_dir = self._manager.data_directory(plugin.id)
        env = child_env(script_environment(match, settings, data_dir, self._env_prefix))

        temp_path: Path | None = None
        if config.inline is not None:
            fd, name = tempfile.mkstemp(prefix="tolk-", suffix=".sh")
            os.close(fd)
            temp_path = Path(name)
            async with aiofiles.open(temp_path, "w") as f:
                await f.write(config.inline)
            os.chmod(temp_path, 0o755)
            argv = build_argv(temp_path, config.interpreter or "bash")
        elif config.command:
            script = plugin.directory / config.command
            argv = build_argv(script, config.interpreter or infer_interpreter(config.command))
        else:
            raise MissingFieldError("command", plugin.id)

        try:
            output = await run_process(argv, timeout=timeout, env=env, cwd=plugin.directory)
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

        return parse_output(output.stdout, plugin.manifest.output_mode)

    # --- HTTP ---

    async def _run_http(
        self, match: PluginMatch, config: HTTPExecution, settings: dict[str, str]
    ) -> PluginResult:
        if not config.url:
            raise MissingFieldError("url", match.plugin.id)
        url = resolve_template(config.url, match.input, settings)
        method = (config.method or "POST").upper()
        timeout = config.timeout or self._default_timeout

        headers = {
            key: resolve_template(value, match.input, settings)
            for key, value in (config.headers or {}).items()
        }
        content: bytes | None = None
        if config.body is not None:
            body = resolve_template_value(config.body, match.input, settings)
            content = json.dumps(body).encode()
            headers.setdefault("Content-Type", "application/json")

        try:
            async with self._http_client_factory(timeout=timeout) as client:
                response = await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            raise PluginTimeoutError(timeout) from e
        except httpx.HTTPError as e:
            raise PluginConnectionError(url, str(e) or type(e).__name__) from e

        if not 200 <= response.status_code < 300:
            raise HTTPStatusError(response.status_code, response.text)

        text = response.text
        if config.response_json_path:
            extracted = extract_json_path(response.content, config.response_json_path)
            if extracted is not None:
                text = extracted
        return parse_output(text, match.plugin.manifest.output_mode)

    # --- Shortcut ---

    async def _run_shortcut(self, match: PluginMatch, config: ShortcutExecution) -> PluginResult:
        if not config.name:
            raise MissingFieldError("name", match.plugin.id)
        timeout = config.timeout or self._default_timeout
        output = await run_process(
            [self._shortcuts_binary, "run", config.name, "--input-path", "-"],
            timeout=timeout,
            stdin=match.input,
        )
        return parse_output(output.stdout, match.plugin.manifest.output_mode)

    # --- AI ---

    async def _system_prompt(
        self, plugin: LoadedPlugin, config: AIExecution, input_text: str, settings: dict[str, str]
    ) -> str:
        if config.system_prompt_file:
            async with aiofiles.open(plugin.directory / config.system_prompt_file, encoding="utf-8") as f:
                raw = await f.read()
            return resolve_template(raw, input_text, settings)
        if config.system_prompt is not None:
            return resolve_template(config.system_prompt, input_text, settings)
        raise MissingFieldError("system_prompt", plugin.id)

    async def _run_ai(
        self,
        match: PluginMatch,
        config: AIExecution,
        settings: dict[str, str],
        history: list[ChatMessage] | None,
        depth: int,
    ) -> PluginRunResult:
        client = self.ai_client
        if client is None:
            raise NoAPIKeyError()

        plugin = match.plugin
        system_prompt = await self._system_prompt(plugin, config, match.input, settings)

        messages = [ChatMessage.system(system_prompt)]
        if config.conversational:
            messages.extend(self._conversations.messages(plugin.id))
        elif history:
            messages.extend(history)
        user_message = ChatMessage.user(match.input)
        messages.append(user_message)

        if config.conversational:
            if not self._conversations.has_active_conversation(plugin.id) and self._events:
                self._events.publish(ConversationStarted(plugin_id=plugin.id))
            self._conversations.append(plugin.id, user_message)

        tools = plugin.manifest.effective_tools()
        if tools and self.tool_runner is not None:
            tool_runner = self.tool_runner

            async def execute(call: ToolCall) -> ToolResult:
                return await tool_runner.execute(call, plugin, tools, depth=depth)

            text = await client.run_tool_loop(
                messages,
                [t.definition() for t in tools],
                execute,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                max_tool_rounds=self._max_tool_rounds,
            )
            return PluginRunResult(plugin=plugin, result=self._finish_ai(plugin, config, text))

        if config.should_stream:
            stream = client.chat_stream(
                messages,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
            if config.conversational:
                stream = self._record_stream(plugin.id, stream)
            return PluginRunResult(plugin=plugin, stream=stream)

        text = await client.chat(
            messages,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        return PluginRunResult(plugin=plugin, result=self._finish_ai(plugin, config, text))

    def _finish_ai(self, plugin: LoadedPlugin, config: AIExecution, text: str) -> PluginResult:
        if config.conversational:
            self._conversations.append(plugin.id, ChatMessage.assistant(text))
        return parse_output(text, plugin.manifest.output_mode)

    async def _record_stream(
        self, plugin_id: str, stream: AsyncIterator[StreamEvent]
    ) -> AsyncIterator[StreamEvent]:
        async for event in stream:
            if event.type == StreamEventType.DONE:
                self._conversations.append(plugin_id, ChatMessage.assistant(event.text))
            yield event

    # --- Pipeline ---

    def _find_step_plugin(self, plugin_id: str) -> LoadedPlugin | None:
        for plugin in self._manager.enabled_plugins:
            if plugin.id == plugin_id:
                return plugin
        return self._manager.get(plugin_id)

    async def _run_pipeline(
        self, match: PluginMatch, config: PipelineExecution, depth: int
    ) -> PluginResult:
        current = match.input
        for step in config.steps:
            step_plugin = self._find_step_plugin(step.plugin)
            if step_plugin is None:
                raise PipelinePluginNotFoundError(step.plugin)

            step_match = PluginMatch(
                plugin=step_plugin,
                trigger=match.trigger,
                trigger_word="",
                input=current,
                raw_input=current,
            )
            logger.debug("Pipeline %s: running step %s", match.plugin.id, step_plugin.id)
            step_result = await self.run(step_match, depth=depth + 1)
            current = await step_result.collect_text()

        return PluginResult(text=current, output_mode=match.plugin.manifest.output_mode)
