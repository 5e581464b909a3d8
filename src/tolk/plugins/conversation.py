"""Per-plugin rolling chat history with inactivity expiry."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from tolk.llm.types import ChatMessage

DEFAULT_TTL_SECONDS = 600.0


@dataclass
class ConversationState:
    messages: list[ChatMessage] = field(default_factory=list)
    last_activity: float = 0.0


class ConversationManager:
    """Conversation state keyed by plugin id.

    Expiry is checked lazily on every read and write. A stale history is
    discarded on the next append, never extended. ``clock`` returns
    seconds and is injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._conversations: dict[str, ConversationState] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _is_expired(self, state: ConversationState) -> bool:
        return self._clock() - state.last_activity > self._ttl

    def messages(self, plugin_id: str) -> list[ChatMessage]:
        state = self._conversations.get(plugin_id)
        if state is None or self._is_expired(state):
            return []
        return list(state.messages)

    def append(self, plugin_id: str, message: ChatMessage) -> None:
        state = self._conversations.get(plugin_id)
        if state is None or self._is_expired(state):
            state = ConversationState()
            self._conversations[plugin_id] = state
        state.messages.append(message)
        state.last_activity = self._clock()

    def clear(self, plugin_id: str) -> None:
        self._conversations.pop(plugin_id, None)

    def has_active_conversation(self, plugin_id: str) -> bool:
        state = self._conversations.get(plugin_id)
        if state is None:
            return False
        return not self._is_expired(state) and bool(state.messages)

    def cleanup_expired(self) -> list[str]:
        """Drop expired conversations; returns the plugin ids removed."""
        expired = [pid for pid, state in self._conversations.items() if self._is_expired(state)]
        for pid in expired:
            del self._conversations[pid]
        return expired

    def __len__(self) -> int:
        return len(self._conversations)
