"""Composition root: wires every service and routes transcriptions to plugins."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from tolk.core.config import Settings
from tolk.core.events import AppLaunched, EventBus, PluginOutput, TranscriptionComplete
from tolk.core.http import HttpClientFactory, make_httpx_client
from tolk.core.logging import AuditLogger
from tolk.llm.base import BaseLLMClient
from tolk.llm.factory import make_client
from tolk.llm.types import StreamEvent
from tolk.plugins.conversation import ConversationManager
from tolk.plugins.errors import InvalidResponseError
from tolk.plugins.hooks import HookDispatcher
from tolk.plugins.manager import PluginManager
from tolk.plugins.matcher import TriggerMatcher
from tolk.plugins.permissions import ApprovalCallback, PermissionManager
from tolk.plugins.runner import PluginRunner
from tolk.plugins.snippets import SnippetManager
from tolk.plugins.storage import EnabledStore, FileSecretStore, SecretStore
from tolk.plugins.tool_runner import Clipboard, PluginToolRunner
from tolk.plugins.types import LoadedPlugin, OutputMode, PluginResult
from tolk.plugins.watcher import PluginDirectoryWatcher
from tolk.registry.client import PluginRegistryClient
from tolk.registry.installer import PluginInstaller

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    """Where results go: paste target, reply surface or clipboard."""

    async def deliver(self, result: PluginResult) -> None: ...

    async def deliver_stream(
        self, plugin: LoadedPlugin, events: AsyncIterator[StreamEvent]
    ) -> str: ...

    async def paste(self, text: str) -> None: ...


@dataclass
class EngineOutcome:
    kind: str  # "snippet" | "plugin" | "passthrough" | "error"
    text: str = ""
    output_mode: OutputMode = OutputMode.PASTE
    plugin_id: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TolkEngine:
    def __init__(
        self,
        settings: Settings,
        output_sink: OutputSink,
        clipboard: Clipboard | None = None,
        secret_store: SecretStore | None = None,
        ai_client: BaseLLMClient | None = None,
        approval_callback: ApprovalCallback | None = None,
        http_client_factory: HttpClientFactory = make_httpx_client,
        audit: AuditLogger | None = None,
    ) -> None:
        self.settings = settings
        self._sink = output_sink
        self.events = EventBus()
        self.audit = audit or AuditLogger(settings.audit_log_path)
        self.conversations = ConversationManager(ttl_seconds=settings.conversation_ttl_seconds)
        self.permissions = PermissionManager(settings.denied_permissions, approval_callback)

        self.manager = PluginManager(
            plugins_dir=settings.plugins_dir,
            settings_dir=settings.plugin_settings_dir,
            data_dir=settings.plugin_data_dir,
            enabled_store=EnabledStore(settings.enabled_plugins_path),
            secret_store=secret_store or FileSecretStore(settings.secrets_path),
            conversations=self.conversations,
            events=self.events,
        )
        self.watcher = PluginDirectoryWatcher(
            settings.plugins_dir, self.manager.reload, settings.reload_debounce_seconds
        )

        client = ai_client if ai_client is not None else make_client(settings)
        self.matcher = TriggerMatcher(client, intent_enabled=settings.intent_matching_enabled)
        self.runner = PluginRunner(
            self.manager,
            self.conversations,
            ai_client=client,
            permissions=self.permissions,
            http_client_factory=http_client_factory,
            audit=self.audit,
            events=self.events,
            default_timeout=settings.default_timeout,
            max_pipeline_depth=settings.max_pipeline_depth,
            max_tool_rounds=settings.max_tool_rounds,
            env_prefix=settings.script_env_prefix,
            shortcuts_binary=settings.shortcuts_binary,
        )
        self.runner.tool_runner = PluginToolRunner(
            self.runner,
            clipboard=clipboard,
            paste=output_sink.paste,
            permissions=self.permissions,
            http_client_factory=http_client_factory,
            web_search_url=settings.web_search_url,
            audit=self.audit,
        )

        self.installer = PluginInstaller(
            self.manager, http_client_factory=http_client_factory, audit=self.audit
        )
        self.registry = PluginRegistryClient(
            settings.registry_index_url,
            installer=self.installer,
            http_client_factory=http_client_factory,
            cache_ttl=settings.registry_cache_ttl_seconds,
        )
        self.snippets = SnippetManager(settings.snippets_path, enabled=settings.snippets_enabled)
        self.hooks = HookDispatcher(
            self.manager, timeout=settings.default_timeout, env_prefix=settings.script_env_prefix
        )
        self.hooks.attach(self.events)

        self._sweep_task: asyncio.Task[None] | None = None
        self.manager.reload()

    @property
    def ai_client(self) -> BaseLLMClient | None:
        return self.runner.ai_client

    @ai_client.setter
    def ai_client(self, client: BaseLLMClient | None) -> None:
        self.runner.ai_client = client
        self.matcher.classifier = client

    # --- Lifecycle ---

    async def start(self, watch: bool = True) -> None:
        if watch:
            self.watcher.start(asyncio.get_running_loop())
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_conversations())
        self.events.publish(AppLaunched())

    async def stop(self) -> None:
        self.watcher.stop()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self.events.drain()
        if self.runner.ai_client is not None:
            await self.runner.ai_client.close()

    async def _sweep_conversations(self) -> None:
        while True:
            await asyncio.sleep(self.settings.conversation_sweep_seconds)
            expired = self.conversations.cleanup_expired()
            if expired:
                logger.debug("Expired conversations: %s", ", ".join(expired))

    # --- Transcriptions ---

    async def handle_transcription(self, text: str) -> EngineOutcome:
        """Route one utterance: snippet, then plugin, else plain dictation."""
        self.events.publish(TranscriptionComplete(text=text))

        snippet = self.snippets.match(text) if self.settings.snippets_enabled else None
        if snippet is not None:
            await self._sink.deliver(PluginResult(text=snippet.body, output_mode=OutputMode.PASTE))
            return EngineOutcome(kind="snippet", text=snippet.body)

        match = None
        if self.settings.plugins_enabled:
            match = await self.matcher.match(text, self.manager.plugins)

        if match is None:
            await self._sink.deliver(PluginResult(text=text, output_mode=OutputMode.PASTE))
            return EngineOutcome(kind="passthrough", text=text)

        plugin = match.plugin
        try:
            run_result = await self.runner.run(match)
            if run_result.stream is not None:
                output = await self._sink.deliver_stream(plugin, run_result.stream)
                mode = OutputMode.REPLY
            elif run_result.result is not None:
                await self._sink.deliver(run_result.result)
                output = run_result.result.text
                mode = run_result.result.output_mode
            else:
                raise InvalidResponseError(f"Plugin {plugin.id} produced no output")
        except Exception as e:
            logger.warning("Plugin %s failed: %s", plugin.id, e, exc_info=logger.isEnabledFor(logging.DEBUG))
            return EngineOutcome(kind="error", plugin_id=plugin.id, error=e)

        self.events.publish(PluginOutput(plugin_id=plugin.id, text=output, output_mode=mode.value))
        return EngineOutcome(kind="plugin", text=output, output_mode=mode, plugin_id=plugin.id)
