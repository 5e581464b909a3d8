"""Client for the remote community plugin catalog."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tolk.core.http import HttpClientFactory, make_httpx_client
from tolk.registry.errors import InvalidInstallURLError, RegistryFetchError
from tolk.registry.installer import PluginInstaller, is_single_file_url

logger = logging.getLogger(__name__)


class RegistryPlugin(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    name: str
    version: str
    description: str = ""
    author: str = ""
    categories: list[str] | None = None
    url: str
    homepage: str | None = None
    featured: bool | None = None

    @property
    def is_single_file(self) -> bool:
        return is_single_file_url(self.url)


class RegistryIndex(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plugins: list[RegistryPlugin] = Field(default_factory=list)


@dataclass(frozen=True)
class PluginUpdateInfo:
    id: str
    current_version: str
    latest_version: str
    url: str


class PluginRegistryClient:
    """Fetches the catalog index and caches it for ``cache_ttl`` seconds."""

    def __init__(
        self,
        index_url: str,
        installer: PluginInstaller | None = None,
        http_client_factory: HttpClientFactory = make_httpx_client,
        cache_ttl: float = 300.0,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._index_url = index_url
        self._installer = installer
        self._http_client_factory = http_client_factory
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self._clock = clock
        self._cached: RegistryIndex | None = None
        self._cached_at = 0.0

    async def fetch_index(self, force_refresh: bool = False) -> RegistryIndex:
        if (
            not force_refresh
            and self._cached is not None
            and self._clock() - self._cached_at < self._cache_ttl
        ):
            return self._cached

        try:
            async with self._http_client_factory(timeout=self._timeout) as client:
                response = await client.get(self._index_url)
        except httpx.HTTPError as e:
            raise RegistryFetchError(str(e)) from e
        if not response.is_success:
            raise RegistryFetchError(f"HTTP {response.status_code}")

        try:
            index = RegistryIndex.model_validate_json(response.content)
        except ValidationError as e:
            raise RegistryFetchError(f"invalid index: {e.error_count()} errors") from e

        self._cached = index
        self._cached_at = self._clock()
        logger.debug("Fetched registry index: %d plugins", len(index.plugins))
        return index

    async def featured(self) -> list[RegistryPlugin]:
        index = await self.fetch_index()
        return [p for p in index.plugins if p.featured]

    async def search(
        self, query: str | None = None, category: str | None = None
    ) -> list[RegistryPlugin]:
        index = await self.fetch_index()
        results = list(index.plugins)
        if query:
            lower = query.lower()
            results = [
                p
                for p in results
                if lower in p.name.lower()
                or lower in p.description.lower()
                or lower in p.id.lower()
            ]
        if category:
            results = [p for p in results if p.categories and category in p.categories]
        return results

    async def check_updates(
        self, installed: Iterable[tuple[str, str]]
    ) -> list[PluginUpdateInfo]:
        """Plugins whose catalog version differs from the installed one.

        Versions are compared as plain strings; any difference counts.
        """
        index = await self.fetch_index(force_refresh=True)
        by_id = {p.id: p for p in index.plugins}
        updates: list[PluginUpdateInfo] = []
        for plugin_id, current_version in installed:
            entry = by_id.get(plugin_id)
            if entry is not None and entry.version != current_version:
                updates.append(
                    PluginUpdateInfo(
                        id=plugin_id,
                        current_version=current_version,
                        latest_version=entry.version,
                        url=entry.url,
                    )
                )
        return updates

    async def get(self, plugin_id: str) -> RegistryPlugin | None:
        index = await self.fetch_index()
        return next((p for p in index.plugins if p.id == plugin_id), None)

    async def install(self, plugin: RegistryPlugin) -> str:
        if self._installer is None:
            raise RuntimeError("No installer configured")
        if not plugin.url:
            raise InvalidInstallURLError(plugin.url)
        return await self._installer.install(plugin.url)
