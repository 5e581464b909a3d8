"""Text snippets: spoken trigger phrases that expand to a stored body."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tolk.plugins.matcher import is_boundary, normalize
from tolk.plugins.storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc).isoformat()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Snippet:
    triggers: list[str]
    body: str
    enabled: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snippet":
        return cls(
            id=data["id"],
            triggers=list(data.get("triggers", [])),
            body=data.get("body", ""),
            enabled=data.get("enabled", data.get("isEnabled", True)),
            updated_at=data.get("updated_at") or _EPOCH,
        )

    @property
    def triggers_display(self) -> str:
        return ", ".join(self.triggers)


def parse_triggers(text: str) -> list[str]:
    """Split a comma-separated trigger list, dropping blanks."""
    return [t.strip() for t in text.split(",") if t.strip()]


class SnippetManager:
    """CRUD and matching over ``snippets.json``."""

    def __init__(self, path: Path, enabled: bool = True) -> None:
        self._path = path
        self._enabled = enabled
        self._snippets: list[Snippet] = []
        self.reload()

    @property
    def snippets(self) -> list[Snippet]:
        return list(self._snippets)

    def reload(self) -> None:
        data = read_json(self._path, [])
        snippets: list[Snippet] = []
        for item in data if isinstance(data, list) else []:
            try:
                snippets.append(Snippet.from_dict(item))
            except (KeyError, TypeError) as e:
                logger.warning("Skipping malformed snippet: %s", e)
        self._snippets = snippets

    def _save(self) -> None:
        write_json_atomic(self._path, [s.to_dict() for s in self._snippets])

    def get(self, snippet_id: str) -> Snippet | None:
        return next((s for s in self._snippets if s.id == snippet_id), None)

    def match(self, text: str) -> Snippet | None:
        """Longest enabled trigger at the start of ``text``, case-insensitive."""
        if not self._enabled:
            return None
        cleaned = normalize(text)
        candidates = [
            (snippet, normalize(trigger))
            for snippet in self._snippets
            if snippet.enabled
            for trigger in snippet.triggers
        ]
        candidates.sort(key=lambda c: len(c[1]), reverse=True)

        for snippet, trigger in candidates:
            if not trigger:
                continue
            if cleaned == trigger:
                return snippet
            if cleaned.startswith(trigger) and is_boundary(cleaned[len(trigger)]):
                return snippet
        return None

    def add(self, triggers: list[str], body: str) -> Snippet:
        snippet = Snippet(triggers=list(triggers), body=body)
        self._snippets.append(snippet)
        self._save()
        return snippet

    def update(self, snippet: Snippet) -> bool:
        for idx, existing in enumerate(self._snippets):
            if existing.id == snippet.id:
                snippet.updated_at = _now()
                self._snippets[idx] = snippet
                self._save()
                return True
        return False

    def delete(self, snippet_id: str) -> bool:
        before = len(self._snippets)
        self._snippets = [s for s in self._snippets if s.id != snippet_id]
        if len(self._snippets) == before:
            return False
        self._save()
        return True

    def set_enabled(self, snippet_id: str, enabled: bool) -> bool:
        snippet = self.get(snippet_id)
        if snippet is None:
            return False
        snippet.enabled = enabled
        snippet.updated_at = _now()
        self._save()
        return True
