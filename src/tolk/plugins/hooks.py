"""Run ``on-<event>.sh`` scripts shipped by enabled script plugins."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from tolk.core.events import (
    AppLaunched,
    ConversationStarted,
    EventBus,
    PluginOutput,
    TranscriptionComplete,
)
from tolk.plugins.manager import PluginManager
from tolk.plugins.process import child_env, run_process
from tolk.plugins.types import LoadedPlugin, ScriptExecution

logger = logging.getLogger(__name__)

EVENT_NAMES: dict[type, str] = {
    TranscriptionComplete: "transcription.complete",
    PluginOutput: "plugin.output",
    AppLaunched: "app.launch",
    ConversationStarted: "conversation.start",
}


def hook_script_name(event_name: str) -> str:
    return f"on-{event_name.replace('.', '-')}.sh"


def event_data(event: object) -> str | None:
    if isinstance(event, (TranscriptionComplete, PluginOutput)):
        return event.text
    if isinstance(event, ConversationStarted):
        return event.plugin_id
    return None


class HookDispatcher:
    """Fire-and-forget event hooks for script plugins.

    Hook output is discarded and failures are only logged.
    """

    def __init__(
        self,
        manager: PluginManager,
        timeout: float = 30.0,
        env_prefix: str = "OPENTOLK_",
    ) -> None:
        self._manager = manager
        self._timeout = timeout
        self._env_prefix = env_prefix

    def attach(self, events: EventBus) -> None:
        for event_type in EVENT_NAMES:
            events.subscribe(event_type, self.handle)

    def detach(self, events: EventBus) -> None:
        for event_type in EVENT_NAMES:
            events.unsubscribe(event_type, self.handle)

    def hook_scripts(self, event_name: str) -> list[tuple[LoadedPlugin, Path]]:
        found: list[tuple[LoadedPlugin, Path]] = []
        for plugin in self._manager.enabled_plugins:
            execution = plugin.manifest.execution
            if not isinstance(execution, ScriptExecution):
                continue
            if not (execution.command or execution.inline):
                continue
            script = plugin.directory / hook_script_name(event_name)
            if script.is_file():
                found.append((plugin, script))
        return found

    async def handle(self, event: object) -> None:
        event_name = EVENT_NAMES.get(type(event))
        if event_name is None:
            return
        scripts = self.hook_scripts(event_name)
        if not scripts:
            return
        data = event_data(event)
        await asyncio.gather(
            *(self._run_hook(plugin, script, event_name, data) for plugin, script in scripts)
        )

    async def _run_hook(
        self, plugin: LoadedPlugin, script: Path, event_name: str, data: str | None
    ) -> None:
        extra = {f"{self._env_prefix}EVENT_TYPE": event_name}
        if data is not None:
            extra[f"{self._env_prefix}EVENT_DATA"] = data
        try:
            result = await run_process(
                ["bash", str(script)],
                timeout=self._timeout,
                env=child_env(extra),
                cwd=plugin.directory,
                check=False,
            )
        except Exception as e:
            logger.warning("Hook %s for plugin %s failed: %s", script.name, plugin.id, e)
            return
        if result.returncode != 0:
            logger.warning(
                "Hook %s for plugin %s exited with %d", script.name, plugin.id, result.returncode
            )
