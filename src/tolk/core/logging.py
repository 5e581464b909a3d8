"""Logging setup and the JSONL audit trail of plugin activity.

Every line of the audit file is one JSON object::

    {"timestamp": ..., "event_type": "plugin_run", "plugin_id": "shout",
     "input": {...}, "output": {...}, "duration_ms": 12}

Optional keys are omitted when empty. String values have terminal escape
codes removed and are clipped to :data:`MAX_AUDIT_VALUE` characters, since
script output is recorded verbatim.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
MAX_AUDIT_VALUE = 10_000

# Libraries that log every request or file event at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "anthropic", "watchdog")

_TERMINAL_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")


def _clip(text: str) -> str:
    text = _TERMINAL_ESCAPE.sub("", text)
    if len(text) <= MAX_AUDIT_VALUE:
        return text
    return f"{text[:MAX_AUDIT_VALUE]}... ({len(text) - MAX_AUDIT_VALUE} more chars)"


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _clip(value)
    if isinstance(value, Mapping):
        return {str(k): _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


def elapsed_ms(started: float) -> int:
    """Milliseconds since a :func:`time.monotonic` reading."""
    return int((time.monotonic() - started) * 1000)


@dataclass
class AuditEntry:
    event_type: str
    plugin_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None
    error: str = ""

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": self.event_type,
        }
        for key in ("plugin_id", "tool_name", "input", "output", "error"):
            value = getattr(self, key)
            if value:
                record[key] = _scrub(value)
        if self.duration_ms is not None:
            record["duration_ms"] = self.duration_ms
        return record


class AuditLogger:
    """Append-only audit trail. A logger built with no path records nothing."""

    def __init__(self, path: Path | None) -> None:
        self.path = path
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, entry: AuditEntry) -> None:
        if self.path is None:
            return
        line = json.dumps(entry.to_record(), default=str, ensure_ascii=False)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def plugin_run(
        self,
        plugin_id: str,
        *,
        input_text: str,
        trigger_word: str,
        output: dict[str, Any],
        started: float,
    ) -> None:
        self.write(
            AuditEntry(
                "plugin_run",
                plugin_id=plugin_id,
                input={"input": input_text, "trigger": trigger_word},
                output=output,
                duration_ms=elapsed_ms(started),
            )
        )

    def plugin_error(self, plugin_id: str, *, input_text: str, error: BaseException, started: float) -> None:
        self.write(
            AuditEntry(
                "plugin_error",
                plugin_id=plugin_id,
                input={"input": input_text},
                error=f"{getattr(error, 'kind', type(error).__name__)}: {error}",
                duration_ms=elapsed_ms(started),
            )
        )

    def tool_call(
        self,
        plugin_id: str,
        tool_name: str,
        *,
        arguments: Mapping[str, Any],
        content: str,
        started: float,
    ) -> None:
        self.write(
            AuditEntry(
                "tool_call",
                plugin_id=plugin_id,
                tool_name=tool_name,
                input=dict(arguments),
                output={"content": content},
                duration_ms=elapsed_ms(started),
            )
        )

    def tool_error(
        self,
        plugin_id: str,
        tool_name: str,
        *,
        arguments: Mapping[str, Any],
        error: BaseException,
        started: float,
    ) -> None:
        self.write(
            AuditEntry(
                "tool_error",
                plugin_id=plugin_id,
                tool_name=tool_name,
                input=dict(arguments),
                error=str(error),
                duration_ms=elapsed_ms(started),
            )
        )

    def plugin_install(self, *, source: str, resolved: str, name: str) -> None:
        self.write(
            AuditEntry(
                "plugin_install",
                input={"source": source, "resolved": resolved},
                output={"name": name},
            )
        )


def setup_logging(level: str = "INFO", app_log_path: Path | None = None) -> None:
    """Send log records to stderr and, when given, to ``app_log_path``."""
    numeric = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if app_log_path is not None:
        app_log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(app_log_path, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=numeric, handlers=handlers, force=True)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))
