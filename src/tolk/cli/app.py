"""Click CLI: run utterances, manage plugins and browse the registry."""

from __future__ import annotations

import asyncio
import sys

import click

from tolk.cli.rendering import (
    ConsoleOutputSink,
    console,
    render_error,
    render_plugin_info,
    render_plugins_table,
    render_registry_table,
    render_snippets_table,
    render_updates_table,
)
from tolk.core.config import Settings, get_settings
from tolk.core.logging import setup_logging
from tolk.engine import EngineOutcome, TolkEngine
from tolk.plugins.permissions import PermissionRequest
from tolk.plugins.snippets import Snippet, parse_triggers
from tolk.registry.errors import InstallerError, RegistryFetchError


def _settings(ctx: click.Context) -> Settings:
    settings: Settings = ctx.obj["settings"]
    return settings


def _make_engine(settings: Settings, confirm_permissions: bool = False) -> TolkEngine:
    sink = ConsoleOutputSink()
    return TolkEngine(
        settings,
        sink,
        clipboard=sink.clipboard,
        approval_callback=_ask_permission if confirm_permissions else None,
    )


async def _ask_permission(request: PermissionRequest) -> bool:
    console.print(
        f"[bold red]Permission required[/bold red] {request.description} "
        f"([yellow]{request.permission.value}[/yellow])"
    )
    return await asyncio.to_thread(click.confirm, "Allow?", default=False)


def _report(outcome: EngineOutcome) -> None:
    if outcome.error is not None:
        kind = getattr(outcome.error, "kind", type(outcome.error).__name__)
        console.print(render_error(str(outcome.error), kind))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """OpenTolk voice plugin engine."""
    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level, settings.app_log_path)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("text", nargs=-1, required=True)
@click.option("--confirm-permissions", is_flag=True, help="Ask before plugins use shell, network or clipboard")
@click.pass_context
def run(ctx: click.Context, text: tuple[str, ...], confirm_permissions: bool) -> None:
    """Handle one utterance as if it had just been transcribed."""
    settings = _settings(ctx)
    outcome = asyncio.run(_run_once(settings, " ".join(text), confirm_permissions))
    _report(outcome)
    if not outcome.ok:
        raise SystemExit(1)


async def _run_once(settings: Settings, text: str, confirm_permissions: bool) -> EngineOutcome:
    engine = _make_engine(settings, confirm_permissions)
    await engine.start(watch=False)
    try:
        return await engine.handle_transcription(text)
    finally:
        await engine.stop()


@cli.command()
@click.option("--confirm-permissions", is_flag=True, help="Ask before plugins use shell, network or clipboard")
@click.pass_context
def listen(ctx: click.Context, confirm_permissions: bool) -> None:
    """Read utterances from stdin, one per line, with hot reload on."""
    asyncio.run(_listen(_settings(ctx), confirm_permissions))


async def _listen(settings: Settings, confirm_permissions: bool) -> None:
    engine = _make_engine(settings, confirm_permissions)
    await engine.start(watch=True)
    console.print(f"[dim]Listening. {len(engine.manager.plugins)} plugins loaded. Ctrl-D to quit.[/dim]")
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if not text:
                continue
            _report(await engine.handle_transcription(text))
    finally:
        await engine.stop()


# --- Plugins ---


@cli.group()
def plugins() -> None:
    """Manage installed plugins."""


@plugins.command("list")
@click.pass_context
def plugins_list(ctx: click.Context) -> None:
    """List installed plugins."""
    engine = _make_engine(_settings(ctx))
    if not engine.manager.plugins:
        console.print(f"[dim]No plugins installed in {engine.manager.plugins_dir}[/dim]")
        return
    console.print(render_plugins_table(engine.manager.plugins))


@plugins.command("info")
@click.argument("plugin_id")
@click.pass_context
def plugins_info(ctx: click.Context, plugin_id: str) -> None:
    """Show a plugin's manifest summary and settings."""
    engine = _make_engine(_settings(ctx))
    plugin = engine.manager.get(plugin_id)
    if plugin is None:
        raise click.ClickException(f"Plugin not found: {plugin_id}")
    console.print(render_plugin_info(plugin, engine.manager.resolved_settings(plugin)))


@plugins.command("enable")
@click.argument("plugin_id")
@click.pass_context
def plugins_enable(ctx: click.Context, plugin_id: str) -> None:
    """Enable a plugin."""
    engine = _make_engine(_settings(ctx))
    if engine.manager.get(plugin_id) is None:
        raise click.ClickException(f"Plugin not found: {plugin_id}")
    engine.manager.set_enabled(plugin_id, True)
    console.print(f"[green]Enabled[/green] {plugin_id}")


@plugins.command("disable")
@click.argument("plugin_id")
@click.pass_context
def plugins_disable(ctx: click.Context, plugin_id: str) -> None:
    """Disable a plugin."""
    engine = _make_engine(_settings(ctx))
    engine.manager.set_enabled(plugin_id, False)
    console.print(f"[yellow]Disabled[/yellow] {plugin_id}")


@plugins.command("uninstall")
@click.argument("plugin_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def plugins_uninstall(ctx: click.Context, plugin_id: str, yes: bool) -> None:
    """Remove a plugin with its settings, secrets and data."""
    engine = _make_engine(_settings(ctx))
    if engine.manager.get(plugin_id) is None:
        raise click.ClickException(f"Plugin not found: {plugin_id}")
    if not yes:
        click.confirm(f"Uninstall {plugin_id}?", abort=True)
    engine.manager.uninstall(plugin_id)
    console.print(f"[green]Uninstalled[/green] {plugin_id}")


@plugins.command("set")
@click.argument("plugin_id")
@click.argument("assignments", nargs=-1, required=True)
@click.pass_context
def plugins_set(ctx: click.Context, plugin_id: str, assignments: tuple[str, ...]) -> None:
    """Store settings as KEY=VALUE pairs. Secret keys go to the secret store."""
    engine = _make_engine(_settings(ctx))
    plugin = engine.manager.get(plugin_id)
    if plugin is None:
        raise click.ClickException(f"Plugin not found: {plugin_id}")
    values: dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}")
        values[key.strip()] = value
    engine.manager.save_settings(plugin_id, values, plugin.manifest)
    console.print(f"[green]Saved[/green] {', '.join(sorted(values))} for {plugin_id}")


# --- Snippets ---


@cli.group()
def snippets() -> None:
    """Manage text snippets expanded before plugin matching."""


def _snippet_or_fail(engine: TolkEngine, snippet_id: str) -> Snippet:
    snippet = engine.snippets.get(snippet_id)
    if snippet is None:
        raise click.ClickException(f"Snippet not found: {snippet_id}")
    return snippet


@snippets.command("list")
@click.pass_context
def snippets_list(ctx: click.Context) -> None:
    """List stored snippets."""
    engine = _make_engine(_settings(ctx))
    if not engine.snippets.snippets:
        console.print("[dim]No snippets.[/dim]")
        return
    console.print(render_snippets_table(engine.snippets.snippets))


@snippets.command("add")
@click.argument("triggers")
@click.argument("body")
@click.pass_context
def snippets_add(ctx: click.Context, triggers: str, body: str) -> None:
    """Add a snippet. TRIGGERS is a comma-separated list of phrases."""
    phrases = parse_triggers(triggers)
    if not phrases:
        raise click.BadParameter("At least one trigger phrase is required", param_hint="TRIGGERS")
    engine = _make_engine(_settings(ctx))
    snippet = engine.snippets.add(phrases, body)
    console.print(f"[green]Added[/green] {snippet.id} ({snippet.triggers_display})")


@snippets.command("edit")
@click.argument("snippet_id")
@click.option("--triggers", default=None, help="Replace the comma-separated trigger list")
@click.option("--body", default=None, help="Replace the expansion text")
@click.pass_context
def snippets_edit(ctx: click.Context, snippet_id: str, triggers: str | None, body: str | None) -> None:
    """Change a snippet's triggers or body."""
    engine = _make_engine(_settings(ctx))
    snippet = _snippet_or_fail(engine, snippet_id)
    if triggers is not None:
        phrases = parse_triggers(triggers)
        if not phrases:
            raise click.BadParameter("At least one trigger phrase is required", param_hint="--triggers")
        snippet.triggers = phrases
    if body is not None:
        snippet.body = body
    engine.snippets.update(snippet)
    console.print(f"[green]Updated[/green] {snippet.id} ({snippet.triggers_display})")


@snippets.command("remove")
@click.argument("snippet_id")
@click.pass_context
def snippets_remove(ctx: click.Context, snippet_id: str) -> None:
    """Delete a snippet."""
    engine = _make_engine(_settings(ctx))
    if not engine.snippets.delete(snippet_id):
        raise click.ClickException(f"Snippet not found: {snippet_id}")
    console.print(f"[green]Removed[/green] {snippet_id}")


@snippets.command("enable")
@click.argument("snippet_id")
@click.pass_context
def snippets_enable(ctx: click.Context, snippet_id: str) -> None:
    """Enable a snippet."""
    engine = _make_engine(_settings(ctx))
    if not engine.snippets.set_enabled(snippet_id, True):
        raise click.ClickException(f"Snippet not found: {snippet_id}")
    console.print(f"[green]Enabled[/green] {snippet_id}")


@snippets.command("disable")
@click.argument("snippet_id")
@click.pass_context
def snippets_disable(ctx: click.Context, snippet_id: str) -> None:
    """Disable a snippet."""
    engine = _make_engine(_settings(ctx))
    if not engine.snippets.set_enabled(snippet_id, False):
        raise click.ClickException(f"Snippet not found: {snippet_id}")
    console.print(f"[yellow]Disabled[/yellow] {snippet_id}")


# --- Registry ---


@cli.group()
def registry() -> None:
    """Browse and install community plugins."""


def _registry_call(coro_factory):  # type: ignore[no-untyped-def]
    try:
        return asyncio.run(coro_factory())
    except (RegistryFetchError, InstallerError) as e:
        raise click.ClickException(str(e)) from e


@registry.command("search")
@click.argument("query", required=False)
@click.option("--category", default=None, help="Filter by category")
@click.pass_context
def registry_search(ctx: click.Context, query: str | None, category: str | None) -> None:
    """Search the catalog by name, description or id."""
    engine = _make_engine(_settings(ctx))
    results = _registry_call(lambda: engine.registry.search(query, category))
    console.print(render_registry_table(results, title="Search results"))


@registry.command("featured")
@click.pass_context
def registry_featured(ctx: click.Context) -> None:
    """List featured plugins."""
    engine = _make_engine(_settings(ctx))
    results = _registry_call(engine.registry.featured)
    console.print(render_registry_table(results, title="Featured"))


@registry.command("updates")
@click.pass_context
def registry_updates(ctx: click.Context) -> None:
    """Check installed plugins against the catalog."""
    engine = _make_engine(_settings(ctx))
    installed = [(p.id, p.manifest.version) for p in engine.manager.plugins]
    updates = _registry_call(lambda: engine.registry.check_updates(installed))
    if not updates:
        console.print("[green]All plugins are up to date.[/green]")
        return
    console.print(render_updates_table(updates))


@registry.command("install")
@click.argument("plugin_id")
@click.pass_context
def registry_install(ctx: click.Context, plugin_id: str) -> None:
    """Install a catalog plugin by id."""
    engine = _make_engine(_settings(ctx))

    async def _install() -> str:
        entry = await engine.registry.get(plugin_id)
        if entry is None:
            raise click.ClickException(f"Not in registry: {plugin_id}")
        return await engine.registry.install(entry)

    name = _registry_call(_install)
    console.print(f"[green]Installed[/green] {name}. Enable it with `tolk plugins enable {plugin_id}`.")


@cli.command("install-url")
@click.argument("url")
@click.pass_context
def install_url(ctx: click.Context, url: str) -> None:
    """Install from an opentolk://install-plugin?url=... link."""
    engine = _make_engine(_settings(ctx))

    async def _confirm(source: str) -> bool:
        console.print(
            f"Install a plugin from:\n  [cyan]{source}[/cyan]\n"
            "[yellow]Only install plugins from sources you trust.[/yellow]"
        )
        return await asyncio.to_thread(click.confirm, "Install?", default=False)

    name = _registry_call(lambda: engine.installer.handle_install_url(url, _confirm))
    if name is None:
        console.print("[dim]Cancelled.[/dim]")
        return
    console.print(f"[green]Installed[/green] {name}.")
