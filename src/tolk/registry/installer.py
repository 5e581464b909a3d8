"""Download and install plugins from URLs, archives and GitHub releases."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shutil
import tempfile
import zipfile
from collections.abc import Awaitable, Callable
from pathlib import Path, PurePosixPath
from urllib.parse import parse_qs, urlparse

import httpx

from tolk.core.http import HttpClientFactory, make_httpx_client
from tolk.core.logging import AuditLogger
from tolk.plugins.manager import ManifestLoadError, PluginManager, load_manifest
from tolk.plugins.types import PLUGIN_EXTENSION
from tolk.registry.errors import (
    DownloadFailedError,
    ExtractionFailedError,
    InvalidInstallURLError,
    InvalidManifestError,
    NoPluginFoundError,
)

logger = logging.getLogger(__name__)

INSTALL_URL_SCHEME = "opentolk"
INSTALL_URL_HOST = "install-plugin"
GITHUB_API_URL = "https://api.github.com"

ConfirmCallback = Callable[[str], Awaitable[bool]]


def parse_install_url(url: str) -> str:
    """Extract the plugin source from ``opentolk://install-plugin?url=...``."""
    parsed = urlparse(url)
    if parsed.scheme != INSTALL_URL_SCHEME or parsed.netloc != INSTALL_URL_HOST:
        raise InvalidInstallURLError(url)
    values = parse_qs(parsed.query).get("url")
    if not values or not values[0]:
        raise InvalidInstallURLError(url)
    source = values[0]
    if urlparse(source).scheme not in ("http", "https"):
        raise InvalidInstallURLError(source)
    return source


def is_single_file_url(url: str) -> bool:
    path = urlparse(url).path.lower()
    return path.endswith(PLUGIN_EXTENSION) or path.endswith(".json")


def _safe_extract(archive: bytes, dest: Path) -> None:
    """Extract a zip, refusing members that escape ``dest``."""
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            root = dest.resolve()
            for member in zf.infolist():
                target = (dest / member.filename).resolve()
                if root != target and root not in target.parents:
                    raise ExtractionFailedError(f"unsafe path in archive: {member.filename}")
            for member in zf.infolist():
                path = Path(zf.extract(member, dest))
                mode = member.external_attr >> 16 & 0o777
                if mode and not member.is_dir():
                    os.chmod(path, mode)
    except zipfile.BadZipFile as e:
        raise ExtractionFailedError(str(e)) from e


def find_plugin_folder(root: Path) -> Path | None:
    """A ``.tolkplugin`` folder at the top level or one level down."""
    top = sorted(root.iterdir())
    for entry in top:
        if entry.is_dir() and entry.suffix == PLUGIN_EXTENSION:
            return entry
    for entry in top:
        if not entry.is_dir():
            continue
        for inner in sorted(entry.iterdir()):
            if inner.is_dir() and inner.suffix == PLUGIN_EXTENSION:
                return inner
    return None


class PluginInstaller:
    """Materializes plugins into the plugins directory.

    All writes go through :class:`PluginManager`'s directory and end with a
    reload so the new plugin is visible immediately.
    """

    def __init__(
        self,
        manager: PluginManager,
        http_client_factory: HttpClientFactory = make_httpx_client,
        github_api_url: str = GITHUB_API_URL,
        timeout: float = 60.0,
        audit: AuditLogger | None = None,
    ) -> None:
        self._manager = manager
        self._http_client_factory = http_client_factory
        self._github_api_url = github_api_url.rstrip("/")
        self._timeout = timeout
        self._audit = audit or AuditLogger(None)

    async def handle_install_url(self, url: str, confirm: ConfirmCallback) -> str | None:
        """Install from a custom-scheme link after the user confirms.

        Returns the installed plugin's name, or ``None`` if declined.
        Nothing is fetched before ``confirm`` returns true.
        """
        source = parse_install_url(url)
        if not await confirm(source):
            logger.info("Install of %s declined", source)
            return None
        return await self.install(source)

    async def install(self, url: str) -> str:
        """Install from a manifest URL, archive URL or GitHub repository URL."""
        if urlparse(url).scheme not in ("http", "https"):
            raise InvalidInstallURLError(url)

        async with self._http_client_factory(timeout=self._timeout) as client:
            resolved = await self.resolve_github_url(client, url)
            data = await self._download(client, resolved)

        if is_single_file_url(resolved):
            name = self._install_single_file(data)
        else:
            name = await asyncio.to_thread(self._install_archive, data)

        self._audit.plugin_install(source=url, resolved=resolved, name=name)
        self._manager.reload()
        logger.info("Installed plugin %s from %s", name, url)
        return name

    async def resolve_github_url(self, client: httpx.AsyncClient, url: str) -> str:
        """Map a github.com repository URL to a downloadable release asset."""
        parsed = urlparse(url)
        if (parsed.hostname or "").lower() != "github.com":
            return url
        parts = [p for p in PurePosixPath(parsed.path).parts if p != "/"]
        if len(parts) < 2:
            return url
        if "releases" in parts and "download" in parts:
            return url

        owner, repo = parts[0], parts[1].removesuffix(".git")
        api_url = f"{self._github_api_url}/repos/{owner}/{repo}/releases/latest"
        try:
            response = await client.get(
                api_url, headers={"Accept": "application/vnd.github.v3+json"}
            )
        except httpx.HTTPError as e:
            raise DownloadFailedError(f"Could not reach GitHub: {e}") from e
        if not response.is_success:
            raise DownloadFailedError("Could not find GitHub release")

        try:
            release = response.json()
        except ValueError as e:
            raise DownloadFailedError("Invalid GitHub release response") from e
        assets = release.get("assets") if isinstance(release, dict) else None
        if not isinstance(assets, list):
            raise DownloadFailedError("Invalid GitHub release response")

        for asset in assets:
            name = str(asset.get("name") or "").lower()
            download = asset.get("browser_download_url")
            if download and (name.endswith(".zip") or "tolkplugin" in name):
                return str(download)

        zipball = release.get("zipball_url")
        if zipball:
            return str(zipball)
        raise DownloadFailedError("No suitable download found in GitHub release")

    async def _download(self, client: httpx.AsyncClient, url: str) -> bytes:
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise DownloadFailedError(str(e)) from e
        if not response.is_success:
            raise DownloadFailedError(f"HTTP {response.status_code}")
        return response.content

    def _install_single_file(self, data: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="tolk-install-") as scratch:
            candidate = Path(scratch) / f"download{PLUGIN_EXTENSION}"
            candidate.write_bytes(data)
            try:
                manifest, _ = load_manifest(candidate)
            except ManifestLoadError as e:
                raise InvalidManifestError(str(e)) from e

            dest = self._manager.plugins_dir / f"{manifest.id}{PLUGIN_EXTENSION}"
            if dest.is_dir():
                shutil.rmtree(dest)
            shutil.copyfile(candidate, dest)
        return manifest.name

    def _install_archive(self, data: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="tolk-install-") as scratch:
            root = Path(scratch)
            _safe_extract(data, root)
            folder = find_plugin_folder(root)
            if folder is None:
                raise NoPluginFoundError()
            try:
                manifest, _ = load_manifest(folder)
            except ManifestLoadError as e:
                raise InvalidManifestError(str(e)) from e

            dest = self._manager.plugins_dir / folder.name
            if dest.is_dir():
                shutil.rmtree(dest)
            elif dest.exists():
                dest.unlink()
            shutil.copytree(folder, dest)
        return manifest.name
