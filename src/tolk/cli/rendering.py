"""Rich rendering helpers and the terminal output sink."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tolk.llm.types import StreamEvent, StreamEventType
from tolk.plugins.snippets import Snippet
from tolk.plugins.types import LoadedPlugin, OutputMode, PluginResult
from tolk.registry.client import PluginUpdateInfo, RegistryPlugin

console = Console()


class TerminalClipboard:
    """In-process clipboard used when running from the terminal."""

    def __init__(self) -> None:
        self._text = ""

    async def read(self) -> str:
        return self._text

    async def write(self, text: str) -> None:
        self._text = text


class ConsoleOutputSink:
    """Prints results; ``paste`` output goes to stdout unadorned."""

    def __init__(self, out: Console | None = None, clipboard: TerminalClipboard | None = None) -> None:
        self._console = out or console
        self.clipboard = clipboard or TerminalClipboard()

    async def deliver(self, result: PluginResult) -> None:
        if result.output_mode == OutputMode.NONE:
            return
        if result.output_mode == OutputMode.CLIPBOARD:
            await self.clipboard.write(result.text)
            self._console.print("[dim]Copied to clipboard.[/dim]")
            return
        if result.output_mode == OutputMode.REPLY:
            self._console.print(render_reply(result.text))
            return
        await self.paste(result.text)

    async def deliver_stream(
        self, plugin: LoadedPlugin, events: AsyncIterator[StreamEvent]
    ) -> str:
        self._console.print(f"[bold cyan]{plugin.name}[/bold cyan]")
        collected: list[str] = []
        async for event in events:
            if event.type == StreamEventType.TEXT_DELTA:
                collected.append(event.text)
                self._console.print(event.text, end="", markup=False, highlight=False)
        self._console.print()
        return "".join(collected)

    async def paste(self, text: str) -> None:
        self._console.print(text, markup=False, highlight=False)


def render_reply(text: str, title: str = "Reply") -> Panel:
    return Panel(Text(text), title=f"[green]{title}[/green]", border_style="green", expand=False)


def render_error(message: str, kind: str = "") -> Panel:
    title = f"[red]Error ({kind})[/red]" if kind else "[red]Error[/red]"
    return Panel(Text(message), title=title, border_style="red", expand=False)


def render_plugins_table(plugins: Iterable[LoadedPlugin]) -> Table:
    table = Table(title="Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Trigger")
    table.add_column("Execution")
    table.add_column("Enabled")
    for p in plugins:
        m = p.manifest
        table.add_row(
            m.id,
            m.name,
            m.version,
            m.trigger.type,
            m.execution.type,
            "[green]yes[/green]" if p.enabled else "[dim]no[/dim]",
        )
    return table


def render_snippets_table(snippets: Iterable[Snippet]) -> Table:
    table = Table(title="Snippets")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Triggers")
    table.add_column("Body")
    table.add_column("Enabled")
    for s in snippets:
        body = s.body if len(s.body) <= 60 else s.body[:57] + "..."
        table.add_row(s.id, s.triggers_display, body, "[green]yes[/green]" if s.enabled else "[dim]no[/dim]")
    return table


def render_plugin_info(plugin: LoadedPlugin, settings: dict[str, str]) -> Panel:
    m = plugin.manifest
    lines = [f"{m.name} v{m.version}"]
    if m.description:
        lines.append(m.description)
    if m.author:
        lines.append(f"Author: {m.author}")
    lines.append(f"Trigger: {m.trigger.model_dump_json(exclude_none=True)}")
    lines.append(f"Execution: {m.execution.type}")
    lines.append(f"Output: {m.output_mode.value}")
    lines.append(f"Location: {plugin.path}")
    for setting in m.settings:
        value = settings.get(setting.key)
        shown = "********" if setting.is_secret and value else (value or "")
        lines.append(f"  {setting.key} ({setting.type.value}) = {shown}")
    for tool in m.effective_tools():
        lines.append(f"  tool {tool.name} [{tool.type.value}]: {tool.description}")
    return Panel(
        Text("\n".join(lines)),
        title=f"[bold]{m.id}[/bold]",
        border_style="green" if plugin.enabled else "dim",
        expand=False,
    )


def render_registry_table(plugins: Iterable[RegistryPlugin], title: str = "Registry") -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Author")
    table.add_column("Description")
    for p in plugins:
        table.add_row(p.id, p.name, p.version, p.author, p.description)
    return table


def render_updates_table(updates: Iterable[PluginUpdateInfo]) -> Table:
    table = Table(title="Updates available")
    table.add_column("ID", style="cyan")
    table.add_column("Installed")
    table.add_column("Latest", style="green")
    for u in updates:
        table.add_row(u.id, u.current_version, u.latest_version)
    return table
