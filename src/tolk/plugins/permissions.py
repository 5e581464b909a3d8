"""Capability checks for plugin executions and tool calls."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from tolk.plugins.types import (
    HTTPExecution,
    LoadedPlugin,
    ScriptExecution,
    ShortcutExecution,
    ToolConfig,
    ToolType,
)

logger = logging.getLogger(__name__)


class PluginPermission(str, Enum):
    SHELL = "shell"
    NETWORK = "network"
    CLIPBOARD = "clipboard"
    PLUGINS = "plugins"


@dataclass
class PermissionRequest:
    plugin_id: str
    permission: PluginPermission
    description: str


ApprovalCallback = Callable[[PermissionRequest], Awaitable[bool]]

_BUILTIN_TOOL_PERMISSIONS = {
    "web_search": PluginPermission.NETWORK,
    "read_clipboard": PluginPermission.CLIPBOARD,
    "paste": PluginPermission.CLIPBOARD,
    "run_plugin": PluginPermission.PLUGINS,
}


def required_for_execution(plugin: LoadedPlugin) -> PluginPermission | None:
    """The capability a plugin's execution kind needs, if any."""
    execution = plugin.manifest.execution
    if isinstance(execution, (ScriptExecution, ShortcutExecution)):
        return PluginPermission.SHELL
    if isinstance(execution, HTTPExecution):
        return PluginPermission.NETWORK
    return None


def required_for_tool(tool: ToolConfig) -> PluginPermission | None:
    if tool.type == ToolType.SCRIPT:
        return PluginPermission.SHELL
    return _BUILTIN_TOOL_PERMISSIONS.get(tool.name)


class PermissionManager:
    """Decides whether a plugin may use a capability.

    Host-level denials always win. Otherwise the optional approval
    callback decides; without one, everything is allowed.
    """

    def __init__(
        self,
        denied: Iterable[str | PluginPermission] = (),
        approval_callback: ApprovalCallback | None = None,
    ) -> None:
        self._denied: set[PluginPermission] = set()
        for item in denied:
            try:
                self._denied.add(PluginPermission(item))
            except ValueError:
                logger.warning("Ignoring unknown permission in deny list: %s", item)
        self._approve = approval_callback

    @property
    def denied(self) -> frozenset[PluginPermission]:
        return frozenset(self._denied)

    async def check(
        self, plugin: LoadedPlugin, permission: PluginPermission, description: str = ""
    ) -> bool:
        if permission in self._denied:
            logger.info("Denied %s for plugin %s (host policy)", permission.value, plugin.id)
            return False
        if self._approve is None:
            return True
        request = PermissionRequest(
            plugin_id=plugin.id,
            permission=permission,
            description=description or f"{plugin.name} wants to use {permission.value}",
        )
        return await self._approve(request)
