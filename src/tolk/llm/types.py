"""Types for LLM interactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Author-defined JSON shapes (tool arguments, schemas, HTTP bodies)
JSONValue = str | int | float | bool | None | dict[str, "JSONValue"] | list["JSONValue"]
JSONObject = dict[str, JSONValue]


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: JSONObject = field(default_factory=dict)


@dataclass
class ToolResult:
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False


@dataclass
class ToolDefinition:
    """A tool offered to the model; ``parameters`` is a JSON schema."""

    name: str
    description: str = ""
    parameters: JSONObject = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class ChatMessage:
    """Provider-neutral chat message.

    Tool results always use ``Role.TOOL`` here; adapters translate to each
    backend's wire shape.
    """

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    name: str = ""

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> "ChatMessage":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, result: ToolResult) -> "ChatMessage":
        return cls(
            role=Role.TOOL,
            content=result.content,
            tool_call_id=result.tool_call_id,
            name=result.name,
        )


@dataclass
class ChatResponse:
    """One non-streaming model turn: final text or a set of tool calls."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class StreamEventType(str, Enum):
    TEXT_DELTA = "text_delta"
    DONE = "done"


@dataclass
class StreamEvent:
    type: StreamEventType
    text: str = ""

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.TEXT_DELTA, text=text)

    @classmethod
    def done(cls, full_text: str) -> "StreamEvent":
        return cls(type=StreamEventType.DONE, text=full_text)


@dataclass
class LLMConfig:
    """Configuration for an LLM client."""

    provider: Provider
    model: str
    api_key: str = ""
    max_tokens: int = 4096
    base_url: str = ""
    timeout: float = 60.0
    stream_timeout: float = 120.0


def coerce_json(value: Any) -> JSONValue:
    """Validate that ``value`` is made only of JSON-compatible parts.

    Tuples are accepted as arrays; mapping keys must be strings.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"JSON object keys must be strings, got {type(key).__name__}")
            out[key] = coerce_json(item)
        return out
    if isinstance(value, (list, tuple)):
        return [coerce_json(item) for item in value]
    raise TypeError(f"Not a JSON value: {type(value).__name__}")


def coerce_json_object(value: Any) -> JSONObject:
    """Like :func:`coerce_json` but requires a top-level object."""
    result = coerce_json(value)
    if not isinstance(result, dict):
        raise TypeError(f"Expected a JSON object, got {type(result).__name__}")
    return result
