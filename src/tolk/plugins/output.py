"""Output routing, ``{{...}}`` templating and the response JSON-path helper."""

from __future__ import annotations

import json
import re
from typing import Any

from tolk.plugins.types import OutputMode, PluginResult

OUTPUT_DIRECTIVE = "@output:"

_PATH_TOKEN = re.compile(r"\[(-?\d+)\]|\.?([^.\[\]]+)")


def parse_output(raw: str, default_mode: OutputMode) -> PluginResult:
    """Split executor output into text and output mode.

    Recognized forms, in order: a JSON object with a ``text`` field (and
    optional ``output``), an ``@output:<mode>`` line followed by the text,
    or plain text with the manifest default.
    """
    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("text"), str):
            output = data.get("output")
            mode = OutputMode.parse(output) if isinstance(output, str) else None
            return PluginResult(text=data["text"], output_mode=mode or default_mode)

    if raw.startswith(OUTPUT_DIRECTIVE):
        head, sep, body = raw[len(OUTPUT_DIRECTIVE):].partition("\n")
        if sep:
            mode = OutputMode.parse(head)
            if mode is not None:
                return PluginResult(text=body, output_mode=mode)

    return PluginResult(text=raw, output_mode=default_mode)


def resolve_template(template: str, input_text: str, settings: dict[str, str]) -> str:
    """Substitute ``{{input}}`` and ``{{settings.KEY}}`` placeholders."""
    result = template.replace("{{input}}", input_text)
    for key, value in settings.items():
        result = result.replace(f"{{{{settings.{key}}}}}", value)
    return result


def resolve_template_value(value: Any, input_text: str, settings: dict[str, str]) -> Any:
    """Apply :func:`resolve_template` to every string inside a JSON value."""
    if isinstance(value, str):
        return resolve_template(value, input_text, settings)
    if isinstance(value, list):
        return [resolve_template_value(v, input_text, settings) for v in value]
    if isinstance(value, dict):
        return {k: resolve_template_value(v, input_text, settings) for k, v in value.items()}
    return value


def parse_json_path(path: str) -> list[str | int]:
    """``.choices[0].message.content`` -> ``["choices", 0, "message", "content"]``."""
    parts: list[str | int] = []
    for index, key in _PATH_TOKEN.findall(path.strip()):
        if index:
            parts.append(int(index))
        elif key:
            parts.append(key)
    return parts


def extract_json_path(body: str | bytes, path: str) -> str | None:
    """Walk ``path`` through a JSON document.

    Strings come back as-is; other values are re-encoded as JSON. Returns
    ``None`` if the body is not JSON or the path does not resolve.
    """
    try:
        current: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None

    for part in parse_json_path(path):
        if isinstance(part, int):
            if not isinstance(current, list) or not -len(current) <= part < len(current):
                return None
            current = current[part]
        else:
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]

    if isinstance(current, str):
        return current
    return json.dumps(current, ensure_ascii=False)
