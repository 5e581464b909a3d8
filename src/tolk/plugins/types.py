"""Plugin manifest models and the runtime values that flow through the engine.

Manifests are JSON documents. Keys are accepted in snake_case or camelCase.
``trigger`` and ``execution`` are tagged by their ``type`` field.
"""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tolk.llm.types import StreamEvent, StreamEventType, ToolDefinition

PLUGIN_EXTENSION = ".tolkplugin"
MANIFEST_FILENAME = "manifest.json"


class _ManifestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class OutputMode(str, Enum):
    PASTE = "paste"
    REPLY = "reply"
    CLIPBOARD = "clipboard"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "OutputMode | None":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class KeywordPosition(str, Enum):
    START = "start"
    END = "end"
    ANYWHERE = "anywhere"


# --- Triggers ---


class KeywordTrigger(_ManifestModel):
    type: Literal["keyword"] = "keyword"
    keywords: list[str] = Field(validation_alias=AliasChoices("keywords", "words"))
    position: KeywordPosition = KeywordPosition.START
    strip_trigger: bool = True


class RegexTrigger(_ManifestModel):
    """``input`` is the first capture group when the pattern has one."""

    type: Literal["regex"] = "regex"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regex: {e}") from e
        return value


class IntentTrigger(_ManifestModel):
    type: Literal["intent"] = "intent"
    description: str


class CatchAllTrigger(_ManifestModel):
    type: Literal["catch_all"] = "catch_all"


_TRIGGER_TYPE_ALIASES = {"catchall": "catch_all", "catch-all": "catch_all", "catchAll": "catch_all"}

Trigger = Annotated[
    Union[KeywordTrigger, RegexTrigger, IntentTrigger, CatchAllTrigger],
    Field(discriminator="type"),
]


# --- Execution ---


class ScriptExecution(_ManifestModel):
    type: Literal["script"] = "script"
    command: str | None = None
    inline: str | None = None
    interpreter: str | None = None
    timeout: float | None = None


class HTTPExecution(_ManifestModel):
    type: Literal["http"] = "http"
    url: str = ""
    method: str | None = None
    headers: dict[str, str] | None = None
    body: Any = None
    timeout: float | None = None
    response_json_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "response_json_path", "responseJSONPath", "responseJsonPath", "response_path"
        ),
    )


class ShortcutExecution(_ManifestModel):
    type: Literal["shortcut"] = "shortcut"
    name: str = Field(
        default="",
        validation_alias=AliasChoices("name", "shortcut_name", "shortcutName"),
    )
    timeout: float | None = None


class ToolType(str, Enum):
    BUILTIN = "builtin"
    SCRIPT = "script"


class ToolConfig(_ManifestModel):
    """A tool an AI plugin exposes to the model."""

    name: str
    description: str = ""
    type: ToolType = ToolType.BUILTIN
    command: str | None = None
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        validation_alias=AliasChoices("parameters", "input_schema", "inputSchema"),
    )
    config: dict[str, str] | None = None
    timeout: float | None = None

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=dict(self.parameters),
        )


class AIExecution(_ManifestModel):
    type: Literal["ai"] = "ai"
    system_prompt: str | None = None
    system_prompt_file: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    conversational: bool = False
    streaming: bool | None = None
    tools: list[ToolConfig] | None = None

    @property
    def should_stream(self) -> bool:
        if self.streaming is not None:
            return self.streaming
        return self.conversational


class PipelineStep(_ManifestModel):
    plugin: str


class PipelineExecution(_ManifestModel):
    type: Literal["pipeline"] = "pipeline"
    steps: list[PipelineStep] = Field(default_factory=list)


Execution = Annotated[
    Union[ScriptExecution, HTTPExecution, ShortcutExecution, AIExecution, PipelineExecution],
    Field(discriminator="type"),
]


# --- Manifest ---


class SettingType(str, Enum):
    STRING = "string"
    SECRET = "secret"
    NUMBER = "number"
    BOOLEAN = "boolean"


class SettingDef(_ManifestModel):
    key: str
    label: str = ""
    type: SettingType = SettingType.STRING
    default: Any = None

    @property
    def is_secret(self) -> bool:
        return self.type == SettingType.SECRET

    def default_string(self) -> str | None:
        if self.default is None:
            return None
        if isinstance(self.default, str):
            return self.default
        return json.dumps(self.default)


class OutputConfig(_ManifestModel):
    mode: OutputMode = OutputMode.PASTE


class PluginManifest(_ManifestModel):
    """Declarative description of one plugin. Immutable once loaded."""

    id: str
    name: str
    version: str = "1.0.0"
    description: str = ""
    author: str = ""
    trigger: Trigger
    execution: Execution
    output: OutputConfig = Field(default_factory=OutputConfig)
    settings: list[SettingDef] = Field(default_factory=list)
    tools: list[ToolConfig] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_trigger_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("trigger"), dict):
            kind = data["trigger"].get("type")
            if kind in _TRIGGER_TYPE_ALIASES:
                data = {**data, "trigger": {**data["trigger"], "type": _TRIGGER_TYPE_ALIASES[kind]}}
        return data

    @field_validator("output", mode="before")
    @classmethod
    def _bare_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"mode": value}
        if value is None:
            return {}
        return value

    @property
    def output_mode(self) -> OutputMode:
        return self.output.mode

    @property
    def secret_keys(self) -> set[str]:
        return {s.key for s in self.settings if s.is_secret}

    def effective_tools(self) -> list[ToolConfig]:
        """Tools for an AI execution; execution-level tools win over manifest-level."""
        if isinstance(self.execution, AIExecution) and self.execution.tools:
            return list(self.execution.tools)
        return list(self.tools)

    @classmethod
    def from_json(cls, data: str | bytes) -> "PluginManifest":
        return cls.model_validate_json(data)


# --- Runtime values ---


@dataclass
class LoadedPlugin:
    """A manifest bound to its location on disk.

    ``path`` is what was found in the plugins directory (a ``.tolkplugin``
    file or folder). ``directory`` is where relative script and prompt
    paths resolve: the folder itself, or the containing folder for
    single-file plugins.
    """

    manifest: PluginManifest
    path: Path
    directory: Path
    enabled: bool = False

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def is_single_file(self) -> bool:
        return self.path.is_file()


@dataclass(frozen=True)
class PluginMatch:
    plugin: LoadedPlugin
    trigger: Any  # one of the Trigger variants
    trigger_word: str
    input: str
    raw_input: str


@dataclass(frozen=True)
class PluginResult:
    text: str
    output_mode: OutputMode = OutputMode.PASTE


@dataclass
class PluginRunResult:
    """Either a finished result or a stream of AI text deltas."""

    plugin: LoadedPlugin
    result: PluginResult | None = None
    stream: AsyncIterator[StreamEvent] | None = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None

    async def collect_text(self) -> str:
        """Return the final text, draining the stream if there is one."""
        if self.stream is None:
            return self.result.text if self.result else ""

        collected: list[str] = []
        async for event in self.stream:
            if event.type == StreamEventType.TEXT_DELTA:
                collected.append(event.text)
        return "".join(collected)
