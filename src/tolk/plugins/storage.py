"""Persistence for plugin settings, secrets and the enabled set."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


def secret_key(plugin_id: str, key: str) -> str:
    return f"plugin.{plugin_id}.{key}"


def write_json_atomic(path: Path, data: Any, mode: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return default


class SecretStore(Protocol):
    """Secure key/value store for secret plugin settings."""

    def load(self, key: str) -> str | None: ...

    def save(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemorySecretStore:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def load(self, key: str) -> str | None:
        return self._values.get(key)

    def save(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._values)


class FileSecretStore:
    """Secrets in a single JSON file readable only by the current user."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def _load_all(self) -> dict[str, str]:
        data = read_json(self._path, {})
        return data if isinstance(data, dict) else {}

    def load(self, key: str) -> str | None:
        value = self._load_all().get(key)
        return value if isinstance(value, str) else None

    def save(self, key: str, value: str) -> None:
        data = self._load_all()
        data[key] = value
        write_json_atomic(self._path, data, mode=0o600)

    def delete(self, key: str) -> None:
        data = self._load_all()
        if data.pop(key, None) is not None:
            write_json_atomic(self._path, data, mode=0o600)

    def keys(self) -> list[str]:
        return sorted(self._load_all())


class SettingsStore:
    """Plain (non-secret) plugin settings, one JSON file per plugin."""

    def __init__(self, settings_dir: Path) -> None:
        self._dir = settings_dir

    def path_for(self, plugin_id: str) -> Path:
        return self._dir / f"{plugin_id}.json"

    def load(self, plugin_id: str) -> dict[str, str]:
        data = read_json(self.path_for(plugin_id), {})
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def save(self, plugin_id: str, values: dict[str, str]) -> None:
        write_json_atomic(self.path_for(plugin_id), values)

    def delete(self, plugin_id: str) -> None:
        self.path_for(plugin_id).unlink(missing_ok=True)


class EnabledStore:
    """The set of enabled plugin ids, stored as a sorted JSON list."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> set[str]:
        data = read_json(self._path, [])
        if not isinstance(data, list):
            return set()
        return {str(x) for x in data}

    def save(self, ids: set[str]) -> None:
        write_json_atomic(self._path, sorted(ids))
