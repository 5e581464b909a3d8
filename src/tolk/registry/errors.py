"""Errors raised while fetching the plugin catalog or installing plugins."""

from __future__ import annotations


class RegistryFetchError(Exception):
    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Failed to fetch plugin registry: {detail}")


class InstallerError(Exception):
    kind = "install_failed"


class InvalidInstallURLError(InstallerError):
    kind = "invalid_url"

    def __init__(self, url: str = "") -> None:
        self.url = url
        super().__init__(f"Invalid plugin URL: {url}" if url else "Invalid plugin URL")


class DownloadFailedError(InstallerError):
    kind = "download_failed"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Download failed: {detail}")


class ExtractionFailedError(InstallerError):
    kind = "extraction_failed"

    def __init__(self, detail: str = "") -> None:
        message = "Failed to extract plugin archive"
        super().__init__(f"{message}: {detail}" if detail else message)


class NoPluginFoundError(InstallerError):
    kind = "no_plugin_found"

    def __init__(self) -> None:
        super().__init__("No .tolkplugin found in archive")


class InvalidManifestError(InstallerError):
    kind = "invalid_manifest"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid manifest: {detail}")
