"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from tolk.core.config import Settings
from tolk.llm.base import BaseLLMClient
from tolk.llm.types import (
    ChatMessage,
    ChatResponse,
    LLMConfig,
    Provider,
    StreamEvent,
    ToolDefinition,
)
from tolk.plugins.conversation import ConversationManager
from tolk.plugins.manager import PluginManager
from tolk.plugins.storage import EnabledStore, MemorySecretStore


def write_plugin(
    plugins_dir: Path,
    manifest: dict[str, Any],
    files: dict[str, str] | None = None,
    single_file: bool = False,
) -> Path:
    """Write a ``.tolkplugin`` folder (or single file) and return its path."""
    plugins_dir.mkdir(parents=True, exist_ok=True)
    if single_file:
        path = plugins_dir / f"{manifest['id']}.tolkplugin"
        path.write_text(json.dumps(manifest))
        return path

    folder = plugins_dir / f"{manifest['id']}.tolkplugin"
    folder.mkdir(parents=True, exist_ok=True)
    (folder / "manifest.json").write_text(json.dumps(manifest))
    for name, content in (files or {}).items():
        target = folder / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        target.chmod(0o755)
    return folder


def keyword_plugin(
    plugin_id: str,
    keywords: list[str],
    execution: dict[str, Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    manifest: dict[str, Any] = {
        "id": plugin_id,
        "name": plugin_id.replace("-", " ").title(),
        "version": "1.0.0",
        "trigger": {"type": "keyword", "keywords": keywords},
        "execution": execution or {"type": "script", "inline": "echo ok"},
    }
    manifest.update(extra)
    return manifest


class FakeLLMClient(BaseLLMClient):
    """Scripted client: replies are popped from the queues in order."""

    def __init__(
        self,
        replies: list[str] | None = None,
        tool_responses: list[ChatResponse] | None = None,
        stream_chunks: list[str] | None = None,
        error: Exception | None = None,
    ) -> None:
        super().__init__(LLMConfig(provider=Provider.OPENAI, model="fake-model"))
        self.replies = list(replies or [])
        self.tool_responses = list(tool_responses or [])
        self.stream_chunks = list(stream_chunks or [])
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        self.calls.append(
            {"kind": "chat", "messages": list(messages), "model": model, "temperature": temperature}
        )
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if self.replies else ""

    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        self.calls.append({"kind": "tools", "messages": list(messages), "tools": list(tools)})
        if self.error is not None:
            raise self.error
        return self.tool_responses.pop(0) if self.tool_responses else ChatResponse(text="")

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append({"kind": "stream", "messages": list(messages)})
        for chunk in self.stream_chunks:
            yield StreamEvent.delta(chunk)
        yield StreamEvent.done("".join(self.stream_chunks))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create Settings pointing at a temp base directory."""
    return Settings(
        base_dir=tmp_path / "opentolk",
        ai_api_key="",
        log_level="DEBUG",
        registry_index_url="https://registry.test/plugins.json",
    )


@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    d = tmp_path / "plugins"
    d.mkdir()
    return d


@pytest.fixture
def conversations() -> ConversationManager:
    return ConversationManager()


@pytest.fixture
def secrets() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def manager(
    tmp_path: Path,
    plugins_dir: Path,
    secrets: MemorySecretStore,
    conversations: ConversationManager,
) -> PluginManager:
    return PluginManager(
        plugins_dir=plugins_dir,
        settings_dir=tmp_path / "plugin-settings",
        data_dir=tmp_path / "plugin-data",
        enabled_store=EnabledStore(tmp_path / "enabled-plugins.json"),
        secret_store=secrets,
        conversations=conversations,
    )


def install(manager: PluginManager, *manifests: dict[str, Any], files: dict[str, dict[str, str]] | None = None) -> None:
    """Write and enable plugins, then reload ``manager``."""
    for manifest in manifests:
        write_plugin(manager.plugins_dir, manifest, (files or {}).get(manifest["id"]))
        manager.set_enabled(manifest["id"], True)
    manager.reload()
