"""Decide which plugin, if any, handles an utterance.

Priority is strict: keyword (longest keyword first), then regex, then
intent classification, then catch-all.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Sequence
from typing import Protocol

from tolk.llm.types import ChatMessage
from tolk.plugins.types import (
    CatchAllTrigger,
    IntentTrigger,
    KeywordPosition,
    KeywordTrigger,
    LoadedPlugin,
    PluginMatch,
    RegexTrigger,
)

logger = logging.getLogger(__name__)

NO_MATCH = "none"


def _is_punctuation(ch: str) -> bool:
    return unicodedata.category(ch).startswith("P")


def is_boundary(ch: str) -> bool:
    return ch.isspace() or _is_punctuation(ch)


def clean_text(text: str) -> str:
    """Trim surrounding whitespace and punctuation, keeping case."""
    start, end = 0, len(text)
    while start < end and is_boundary(text[start]):
        start += 1
    while end > start and is_boundary(text[end - 1]):
        end -= 1
    return text[start:end]


def normalize(text: str) -> str:
    return clean_text(text).lower()


def _strip_leading(text: str, length: int) -> str:
    """Drop ``length`` characters plus one boundary character, then trim."""
    rest = text[length:]
    if rest and is_boundary(rest[0]):
        rest = rest[1:]
    return rest.strip()


def _strip_trailing(text: str, length: int) -> str:
    rest = text[: len(text) - length]
    if rest and is_boundary(rest[-1]):
        rest = rest[:-1]
    return rest.strip()


def match_keyword(
    keyword: str,
    trigger: KeywordTrigger,
    cleaned: str,
    normalized: str,
) -> str | None:
    """Return the extracted input if ``keyword`` fires, else ``None``.

    ``normalized`` is the lowercased form of ``cleaned``. When the
    lowercase form changes length (rare Unicode cases), stripping works on
    the normalized text instead.
    """
    kw = normalize(keyword)
    if not kw:
        return None
    source = cleaned if len(cleaned) == len(normalized) else normalized
    n = len(kw)

    if trigger.position == KeywordPosition.START:
        if normalized == kw:
            return "" if trigger.strip_trigger else source
        if normalized.startswith(kw) and is_boundary(normalized[n]):
            return _strip_leading(source, n) if trigger.strip_trigger else source
        return None

    if trigger.position == KeywordPosition.END:
        if normalized == kw:
            return "" if trigger.strip_trigger else source
        if normalized.endswith(kw) and is_boundary(normalized[-n - 1]):
            return _strip_trailing(source, n) if trigger.strip_trigger else source
        return None

    idx = normalized.find(kw)
    while idx != -1:
        before_ok = idx == 0 or is_boundary(normalized[idx - 1])
        after = idx + n
        after_ok = after == len(normalized) or is_boundary(normalized[after])
        if before_ok and after_ok:
            if not trigger.strip_trigger:
                return source
            left = source[:idx].rstrip()
            right = source[after:]
            if right and is_boundary(right[0]):
                right = right[1:]
            return " ".join(part for part in (left, right.strip()) if part)
        idx = normalized.find(kw, idx + 1)
    return None


class IntentClassifier(Protocol):
    async def chat(self, messages: list[ChatMessage], **kwargs: object) -> str: ...


def build_intent_prompt(plugins: Sequence[LoadedPlugin]) -> str:
    lines = [
        "You route voice commands to plugins. Reply with exactly one plugin id "
        f"from the list below, or '{NO_MATCH}' if none fits. Reply with the id only.",
        "",
    ]
    for plugin in plugins:
        trigger = plugin.manifest.trigger
        lines.append(f"- {plugin.id}: {trigger.description}")
    return "\n".join(lines)


class TriggerMatcher:
    """Resolves utterances against a snapshot of enabled plugins."""

    def __init__(
        self,
        classifier: IntentClassifier | None = None,
        intent_enabled: bool = True,
    ) -> None:
        self._classifier = classifier
        self._intent_enabled = intent_enabled

    @property
    def classifier(self) -> IntentClassifier | None:
        return self._classifier

    @classifier.setter
    def classifier(self, value: IntentClassifier | None) -> None:
        self._classifier = value

    async def match(self, text: str, plugins: Sequence[LoadedPlugin]) -> PluginMatch | None:
        enabled = [p for p in plugins if p.enabled]
        if not enabled:
            return None
        cleaned = clean_text(text)
        normalized = cleaned.lower()
        if not normalized:
            return None

        found = (
            self._match_keywords(text, cleaned, normalized, enabled)
            or self._match_regex(text, cleaned, enabled)
            or await self._match_intent(text, cleaned, enabled)
            or self._match_catch_all(text, cleaned, enabled)
        )
        if found is not None:
            logger.debug("Matched plugin %s (%s)", found.plugin.id, found.trigger.type)
        return found

    def _match_keywords(
        self,
        raw: str,
        cleaned: str,
        normalized: str,
        plugins: Sequence[LoadedPlugin],
    ) -> PluginMatch | None:
        candidates: list[tuple[LoadedPlugin, KeywordTrigger, str]] = []
        for plugin in plugins:
            trigger = plugin.manifest.trigger
            if isinstance(trigger, KeywordTrigger):
                candidates.extend((plugin, trigger, kw) for kw in trigger.keywords)
        candidates.sort(key=lambda c: len(normalize(c[2])), reverse=True)

        for plugin, trigger, keyword in candidates:
            extracted = match_keyword(keyword, trigger, cleaned, normalized)
            if extracted is not None:
                return PluginMatch(
                    plugin=plugin,
                    trigger=trigger,
                    trigger_word=keyword,
                    input=extracted,
                    raw_input=raw,
                )
        return None

    def _match_regex(
        self, raw: str, cleaned: str, plugins: Sequence[LoadedPlugin]
    ) -> PluginMatch | None:
        for plugin in plugins:
            trigger = plugin.manifest.trigger
            if not isinstance(trigger, RegexTrigger):
                continue
            try:
                m = re.search(trigger.pattern, cleaned, re.IGNORECASE)
            except re.error as e:
                logger.warning("Bad pattern in plugin %s: %s", plugin.id, e)
                continue
            if m is None:
                continue
            if "input" in m.re.groupindex:
                extracted = m.group("input") or ""
            elif m.re.groups:
                extracted = m.group(1) or ""
            else:
                extracted = cleaned
            return PluginMatch(
                plugin=plugin,
                trigger=trigger,
                trigger_word=m.group(0),
                input=extracted.strip(),
                raw_input=raw,
            )
        return None

    async def _match_intent(
        self, raw: str, cleaned: str, plugins: Sequence[LoadedPlugin]
    ) -> PluginMatch | None:
        if not self._intent_enabled or self._classifier is None:
            return None
        intent_plugins = [p for p in plugins if isinstance(p.manifest.trigger, IntentTrigger)]
        if not intent_plugins:
            return None

        messages = [
            ChatMessage.system(build_intent_prompt(intent_plugins)),
            ChatMessage.user(cleaned),
        ]
        try:
            answer = await self._classifier.chat(messages, temperature=0)
        except Exception as e:
            logger.debug("Intent classification failed: %s", e)
            return None

        chosen = answer.strip().strip("`'\".").strip()
        if not chosen or chosen.lower() == NO_MATCH:
            return None
        for plugin in intent_plugins:
            if plugin.id == chosen or plugin.id.lower() == chosen.lower():
                return PluginMatch(
                    plugin=plugin,
                    trigger=plugin.manifest.trigger,
                    trigger_word="",
                    input=cleaned,
                    raw_input=raw,
                )
        logger.debug("Intent classifier returned unknown id %r", chosen)
        return None

    def _match_catch_all(
        self, raw: str, cleaned: str, plugins: Sequence[LoadedPlugin]
    ) -> PluginMatch | None:
        for plugin in plugins:
            trigger = plugin.manifest.trigger
            if isinstance(trigger, CatchAllTrigger):
                return PluginMatch(
                    plugin=plugin,
                    trigger=trigger,
                    trigger_word="",
                    input=cleaned,
                    raw_input=raw,
                )
        return None
