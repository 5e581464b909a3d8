"""PluginManager: discover, validate and track ``.tolkplugin`` packages."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from pydantic import ValidationError

from tolk.core.events import EventBus, PluginSettingsChanged, PluginsReloaded
from tolk.plugins.conversation import ConversationManager
from tolk.plugins.storage import (
    EnabledStore,
    MemorySecretStore,
    SecretStore,
    SettingsStore,
    secret_key,
)
from tolk.plugins.types import (
    MANIFEST_FILENAME,
    PLUGIN_EXTENSION,
    LoadedPlugin,
    PluginManifest,
    ScriptExecution,
)

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """A manifest could not be parsed or failed validation."""


def validate_manifest(manifest: PluginManifest, directory: Path) -> str | None:
    """Return the reason a manifest is unusable, or ``None`` if it is valid."""
    if not manifest.id.strip():
        return "missing id"
    if not manifest.name.strip():
        return "missing name"
    if ".." in manifest.id or "/" in manifest.id or "\\" in manifest.id:
        return f"invalid id {manifest.id!r}"

    execution = manifest.execution
    if isinstance(execution, ScriptExecution) and execution.command:
        script = directory / execution.command
        if not script.is_file():
            return f"script not found: {execution.command}"
    return None


def load_manifest(path: Path) -> tuple[PluginManifest, Path]:
    """Parse the manifest for a plugin entry.

    Returns the manifest and the directory relative paths resolve against.
    Raises :class:`ManifestLoadError` on any failure.
    """
    if path.is_dir():
        manifest_path = path / MANIFEST_FILENAME
        directory = path
    else:
        manifest_path = path
        directory = path.parent

    try:
        raw = manifest_path.read_bytes()
    except OSError as e:
        raise ManifestLoadError(f"cannot read {manifest_path.name}: {e}") from e

    try:
        manifest = PluginManifest.from_json(raw)
    except (ValidationError, ValueError) as e:
        raise ManifestLoadError(str(e)) from e

    reason = validate_manifest(manifest, directory)
    if reason:
        raise ManifestLoadError(reason)
    return manifest, directory


class PluginManager:
    """Owns the loaded plugin set and per-plugin settings.

    The set is replaced wholesale on every :meth:`reload`; callers holding
    an earlier snapshot keep working with it.
    """

    def __init__(
        self,
        plugins_dir: Path,
        settings_dir: Path,
        data_dir: Path,
        enabled_store: EnabledStore,
        secret_store: SecretStore | None = None,
        conversations: ConversationManager | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._plugins_dir = plugins_dir
        self._data_dir = data_dir
        self._settings = SettingsStore(settings_dir)
        self._enabled_store = enabled_store
        self._secrets: SecretStore = secret_store or MemorySecretStore()
        self._conversations = conversations
        self._events = events
        self._plugins: tuple[LoadedPlugin, ...] = ()

        for d in (plugins_dir, settings_dir, data_dir):
            d.mkdir(parents=True, exist_ok=True)

    @property
    def plugins_dir(self) -> Path:
        return self._plugins_dir

    @property
    def plugins(self) -> tuple[LoadedPlugin, ...]:
        return self._plugins

    @property
    def enabled_plugins(self) -> list[LoadedPlugin]:
        return [p for p in self._plugins if p.enabled]

    def get(self, plugin_id: str) -> LoadedPlugin | None:
        for plugin in self._plugins:
            if plugin.id == plugin_id:
                return plugin
        return None

    # --- Discovery ---

    def reload(self) -> tuple[LoadedPlugin, ...]:
        """Rescan the plugins directory and publish the new set."""
        enabled_ids = self._enabled_store.load()
        loaded: list[LoadedPlugin] = []
        seen: set[str] = set()

        entries = sorted(self._plugins_dir.iterdir()) if self._plugins_dir.exists() else []
        for entry in entries:
            if entry.name.startswith(".") or entry.suffix != PLUGIN_EXTENSION:
                continue
            try:
                manifest, directory = load_manifest(entry)
            except ManifestLoadError as e:
                logger.warning("Skipping plugin %s: %s", entry.name, e)
                continue
            if manifest.id in seen:
                logger.warning("Skipping plugin %s: duplicate id %s", entry.name, manifest.id)
                continue
            seen.add(manifest.id)
            loaded.append(
                LoadedPlugin(
                    manifest=manifest,
                    path=entry,
                    directory=directory,
                    enabled=manifest.id in enabled_ids,
                )
            )

        loaded.sort(key=lambda p: p.manifest.name.casefold())
        self._plugins = tuple(loaded)
        logger.info(
            "Loaded %d plugins (%d enabled)",
            len(loaded),
            sum(1 for p in loaded if p.enabled),
        )

        if self._events is not None:
            self._events.publish(PluginsReloaded(plugins=self._plugins))
        return self._plugins

    # --- Enable / disable ---

    def enabled_ids(self) -> set[str]:
        return self._enabled_store.load()

    def is_enabled(self, plugin_id: str) -> bool:
        return plugin_id in self._enabled_store.load()

    def set_enabled(self, plugin_id: str, enabled: bool) -> None:
        ids = self._enabled_store.load()
        if enabled:
            ids.add(plugin_id)
        else:
            ids.discard(plugin_id)
        self._enabled_store.save(ids)

        plugin = self.get(plugin_id)
        if plugin is not None:
            plugin.enabled = enabled

    # --- Settings ---

    def load_settings(self, plugin_id: str) -> dict[str, str]:
        """Plain settings as stored on disk. Secrets are never included."""
        return self._settings.load(plugin_id)

    def save_settings(
        self, plugin_id: str, values: dict[str, str], manifest: PluginManifest | None = None
    ) -> None:
        """Persist settings, routing secret keys to the secret store."""
        if manifest is None:
            plugin = self.get(plugin_id)
            manifest = plugin.manifest if plugin else None
        secret_keys = manifest.secret_keys if manifest else set()

        plain = self._settings.load(plugin_id)
        for key, value in values.items():
            if key in secret_keys:
                self._secrets.save(secret_key(plugin_id, key), value)
                plain.pop(key, None)
            else:
                plain[key] = value
        self._settings.save(plugin_id, plain)

        if self._events is not None:
            self._events.publish(PluginSettingsChanged(plugin_id=plugin_id))

    def resolved_settings(self, plugin: LoadedPlugin) -> dict[str, str]:
        """Plain settings merged with secrets and manifest defaults."""
        settings = self._settings.load(plugin.id)
        for key in plugin.manifest.secret_keys:
            value = self._secrets.load(secret_key(plugin.id, key))
            if value is not None:
                settings[key] = value
        for setting in plugin.manifest.settings:
            if setting.key not in settings:
                default = setting.default_string()
                if default is not None:
                    settings[setting.key] = default
        return settings

    # --- Data directory ---

    def data_directory(self, plugin_id: str) -> Path:
        path = self._data_dir / plugin_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    # --- Uninstall ---

    def uninstall(self, plugin_id: str) -> bool:
        """Remove a plugin and everything stored for it, then reload."""
        plugin = self.get(plugin_id)
        if plugin is None:
            return False

        if plugin.path.is_dir():
            shutil.rmtree(plugin.path, ignore_errors=True)
        else:
            plugin.path.unlink(missing_ok=True)

        self._settings.delete(plugin_id)
        for key in plugin.manifest.secret_keys:
            self._secrets.delete(secret_key(plugin_id, key))
        shutil.rmtree(self._data_dir / plugin_id, ignore_errors=True)
        self.set_enabled(plugin_id, False)
        if self._conversations is not None:
            self._conversations.clear(plugin_id)

        logger.info("Uninstalled plugin %s", plugin_id)
        self.reload()
        return True

