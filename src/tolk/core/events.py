"""Typed in-process event bus connecting the engine's subsystems."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginsReloaded:
    plugins: tuple[Any, ...] = ()  # tuple[LoadedPlugin, ...]


@dataclass(frozen=True)
class PluginSettingsChanged:
    plugin_id: str


@dataclass(frozen=True)
class TranscriptionComplete:
    text: str


@dataclass(frozen=True)
class PluginOutput:
    plugin_id: str
    text: str
    output_mode: str


@dataclass(frozen=True)
class ConversationStarted:
    plugin_id: str


@dataclass(frozen=True)
class AppLaunched:
    pass


E = TypeVar("E")
EventHandler = Callable[[Any], Any]


@dataclass
class _Subscription:
    event_type: type
    handler: EventHandler = field(compare=False)


class EventBus:
    """Dispatches typed events to subscribed handlers.

    Handlers may be plain callables or coroutine functions. Coroutines are
    scheduled on the running loop and not awaited by ``publish``. A failing
    handler is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        self._subscriptions.append(_Subscription(event_type, handler))

    def unsubscribe(self, event_type: type, handler: EventHandler) -> None:
        self._subscriptions = [
            s
            for s in self._subscriptions
            if not (s.event_type is event_type and s.handler is handler)
        ]

    def publish(self, event: Any) -> None:
        for sub in list(self._subscriptions):
            if not isinstance(event, sub.event_type):
                continue
            try:
                result = sub.handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, type(event).__name__)

    def _schedule(self, awaitable: Any, event_name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping async handler for %s", event_name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for all scheduled async handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
