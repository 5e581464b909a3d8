"""Hot reload: watch the plugins directory and debounce reloads onto asyncio."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class DebouncedReloadHandler(FileSystemEventHandler):
    """Collapses bursts of filesystem events into one reload call.

    Watchdog delivers events on its own thread; each one is handed to the
    event loop, where a single pending timer is restarted.
    """

    def __init__(
        self,
        reload: Callable[[], object],
        loop: asyncio.AbstractEventLoop,
        debounce_seconds: float = 0.5,
    ) -> None:
        super().__init__()
        self._reload = reload
        self._loop = loop
        self._debounce_seconds = debounce_seconds
        self._pending: asyncio.TimerHandle | None = None

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.schedule)

    def schedule(self) -> None:
        """Restart the debounce timer. Must run on the loop thread."""
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self._debounce_seconds, self._fire)

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _fire(self) -> None:
        self._pending = None
        try:
            self._reload()
        except Exception:
            logger.exception("Plugin reload failed")


class PluginDirectoryWatcher:
    """Wraps a watchdog observer for one plugins directory."""

    def __init__(
        self,
        directory: Path,
        reload: Callable[[], object],
        debounce_seconds: float = 0.5,
    ) -> None:
        self._directory = directory
        self._reload = reload
        self._debounce_seconds = debounce_seconds
        self._observer: Observer | None = None
        self._handler: DebouncedReloadHandler | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self._observer is not None:
            return
        loop = loop or asyncio.get_running_loop()
        self._directory.mkdir(parents=True, exist_ok=True)
        self._handler = DebouncedReloadHandler(self._reload, loop, self._debounce_seconds)
        self._observer = Observer()
        self._observer.schedule(self._handler, str(self._directory), recursive=True)
        self._observer.start()
        logger.info("Watching plugins directory: %s", self._directory)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        if self._handler is not None:
            self._handler.cancel()
            self._handler = None
        logger.info("Stopped watching plugins directory")
