"""Tests for conversation history and expiry."""

from tolk.llm.types import ChatMessage, Role
from tolk.plugins.conversation import ConversationManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_append_and_read():
    cm = ConversationManager(ttl_seconds=60, clock=FakeClock())
    cm.append("chat", ChatMessage.user("hi"))
    cm.append("chat", ChatMessage.assistant("hello"))
    msgs = cm.messages("chat")
    assert [m.role for m in msgs] == [Role.USER, Role.ASSISTANT]
    assert cm.has_active_conversation("chat")
    assert cm.messages("other") == []


def test_messages_returns_copy():
    cm = ConversationManager(clock=FakeClock())
    cm.append("chat", ChatMessage.user("hi"))
    cm.messages("chat").append(ChatMessage.user("sneaky"))
    assert len(cm.messages("chat")) == 1


def test_expired_history_is_replaced_not_extended():
    clock = FakeClock()
    cm = ConversationManager(ttl_seconds=60, clock=clock)
    cm.append("chat", ChatMessage.user("old"))
    clock.now += 61
    assert cm.messages("chat") == []
    assert not cm.has_active_conversation("chat")
    cm.append("chat", ChatMessage.user("new"))
    assert [m.content for m in cm.messages("chat")] == ["new"]


def test_activity_extends_ttl():
    clock = FakeClock()
    cm = ConversationManager(ttl_seconds=60, clock=clock)
    cm.append("chat", ChatMessage.user("a"))
    clock.now += 50
    cm.append("chat", ChatMessage.user("b"))
    clock.now += 50
    assert len(cm.messages("chat")) == 2


def test_cleanup_expired():
    clock = FakeClock()
    cm = ConversationManager(ttl_seconds=60, clock=clock)
    cm.append("old", ChatMessage.user("a"))
    clock.now += 30
    cm.append("fresh", ChatMessage.user("b"))
    clock.now += 40
    assert cm.cleanup_expired() == ["old"]
    assert len(cm) == 1


def test_clear():
    cm = ConversationManager(clock=FakeClock())
    cm.append("chat", ChatMessage.user("a"))
    cm.clear("chat")
    cm.clear("never-existed")
    assert len(cm) == 0
