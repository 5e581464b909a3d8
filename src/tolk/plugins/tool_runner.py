"""Execute tool calls requested by AI plugins.

Every failure becomes an error :class:`ToolResult` the model can read;
nothing raised here aborts the AI turn.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from tolk.core.http import HttpClientFactory, make_httpx_client
from tolk.core.logging import AuditLogger
from tolk.llm.types import ToolCall, ToolResult
from tolk.plugins.errors import PluginError
from tolk.plugins.permissions import PermissionManager, required_for_tool
from tolk.plugins.process import build_argv, child_env, infer_interpreter, run_process
from tolk.plugins.types import LoadedPlugin, PluginMatch, ToolConfig, ToolType

if TYPE_CHECKING:
    from tolk.plugins.runner import PluginRunner

logger = logging.getLogger(__name__)

DEFAULT_WEB_SEARCH_URL = "https://api.duckduckgo.com/"


class Clipboard(Protocol):
    async def read(self) -> str: ...

    async def write(self, text: str) -> None: ...


PasteFunc = Callable[[str], Awaitable[None]]


def _summarize_search(data: dict[str, Any], query: str) -> str:
    results: list[str] = []
    abstract = data.get("Abstract")
    if isinstance(abstract, str) and abstract:
        results.append(abstract)
    for topic in (data.get("RelatedTopics") or [])[:3]:
        if isinstance(topic, dict) and isinstance(topic.get("Text"), str):
            results.append(topic["Text"])
    if not results:
        return f"No results found for: {query}"
    return "\n\n".join(results)


class PluginToolRunner:
    """Runs builtin and script tools on behalf of one plugin's AI turn."""

    def __init__(
        self,
        runner: PluginRunner,
        *,
        clipboard: Clipboard | None = None,
        paste: PasteFunc | None = None,
        permissions: PermissionManager | None = None,
        http_client_factory: HttpClientFactory = make_httpx_client,
        web_search_url: str = DEFAULT_WEB_SEARCH_URL,
        audit: AuditLogger | None = None,
    ) -> None:
        self._runner = runner
        self._clipboard = clipboard
        self._paste = paste
        self._permissions = permissions or PermissionManager()
        self._http_client_factory = http_client_factory
        self._web_search_url = web_search_url
        self._audit = audit or AuditLogger(None)
        self._builtins: dict[str, Callable[..., Awaitable[str]]] = {
            "web_search": self._web_search,
            "read_clipboard": self._read_clipboard,
            "paste": self._paste_text,
            "run_plugin": self._run_plugin,
        }

    async def execute(
        self,
        call: ToolCall,
        plugin: LoadedPlugin,
        tools: Sequence[ToolConfig],
        depth: int = 0,
    ) -> ToolResult:
        start = time.monotonic()
        tool = next((t for t in tools if t.name == call.name), None)
        if tool is None:
            return self._error(call, f"Unknown tool: {call.name}")

        permission = required_for_tool(tool)
        if permission is not None and not await self._permissions.check(
            plugin, permission, f"{plugin.name} wants to run tool {tool.name}"
        ):
            return self._error(call, f"Permission denied: {permission.value}")

        try:
            if tool.type == ToolType.SCRIPT:
                content = await self._run_script_tool(tool, call, plugin)
            else:
                handler = self._builtins.get(tool.name)
                if handler is None:
                    return self._error(call, f"Unknown builtin tool: {tool.name}")
                content = await handler(tool, call, plugin, depth)
        except Exception as e:
            logger.warning("Tool %s failed for plugin %s: %s", call.name, plugin.id, e)
            self._audit.tool_error(plugin.id, call.name, arguments=call.arguments, error=e, started=start)
            return self._error(call, str(e))

        self._audit.tool_call(plugin.id, call.name, arguments=call.arguments, content=content, started=start)
        return ToolResult(tool_call_id=call.id, name=call.name, content=content)

    @staticmethod
    def _error(call: ToolCall, message: str) -> ToolResult:
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=f"Error: {message}",
            is_error=True,
        )

    # --- Script tools ---

    async def _run_script_tool(self, tool: ToolConfig, call: ToolCall, plugin: LoadedPlugin) -> str:
        if not tool.command:
            raise PluginError("Script tool missing command")
        args_json = json.dumps(call.arguments)
        prefix = self._runner.env_prefix
        env = child_env(
            {
                f"{prefix}TOOL_NAME": call.name,
                f"{prefix}TOOL_ARGS": args_json,
                f"{prefix}PLUGIN_DIR": str(plugin.directory),
            }
        )
        script = plugin.directory / tool.command
        output = await run_process(
            build_argv(script, infer_interpreter(tool.command) or "bash"),
            timeout=tool.timeout or self._runner.default_timeout,
            env=env,
            cwd=plugin.directory,
            stdin=args_json,
        )
        return output.stdout

    # --- Builtins ---

    async def _web_search(
        self, tool: ToolConfig, call: ToolCall, plugin: LoadedPlugin, depth: int
    ) -> str:
        query = str(call.arguments.get("query") or "").strip()
        if not query:
            return "No query provided"
        params = {"q": query, "format": "json", "no_html": "1"}
        async with self._http_client_factory(timeout=self._runner.default_timeout) as client:
            response = await client.get(self._web_search_url, params=params)
        if not response.is_success:
            raise PluginError(f"Search failed with HTTP {response.status_code}")
        try:
            data = response.json()
        except (json.JSONDecodeError, httpx.DecodingError):
            return "No results found"
        if not isinstance(data, dict):
            return "No results found"
        return _summarize_search(data, query)

    async def _read_clipboard(
        self, tool: ToolConfig, call: ToolCall, plugin: LoadedPlugin, depth: int
    ) -> str:
        if self._clipboard is None:
            raise PluginError("Clipboard is not available")
        return await self._clipboard.read()

    async def _paste_text(
        self, tool: ToolConfig, call: ToolCall, plugin: LoadedPlugin, depth: int
    ) -> str:
        if self._paste is None:
            raise PluginError("Paste is not available")
        await self._paste(str(call.arguments.get("text") or ""))
        return "Pasted successfully"

    async def _run_plugin(
        self, tool: ToolConfig, call: ToolCall, plugin: LoadedPlugin, depth: int
    ) -> str:
        target_id = (tool.config or {}).get("plugin_id") or str(call.arguments.get("plugin_id") or "")
        input_text = str(call.arguments.get("input") or "")
        target = next(
            (p for p in self._runner.manager.enabled_plugins if p.id == target_id), None
        )
        if target is None:
            return f"Plugin not found: {target_id}"

        match = PluginMatch(
            plugin=target,
            trigger=target.manifest.trigger,
            trigger_word="",
            input=input_text,
            raw_input=input_text,
        )
        result = await self._runner.run(match, depth=depth + 1)
        return await result.collect_text()
