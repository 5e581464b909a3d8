"""Claude API client: chat, tool use and streaming via the Anthropic SDK."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import anthropic

from tolk.llm.base import BaseLLMClient
from tolk.llm.errors import AIConnectionError, AIHTTPError, InvalidAIResponseError
from tolk.llm.types import (
    ChatMessage,
    ChatResponse,
    LLMConfig,
    Role,
    StreamEvent,
    ToolCall,
    ToolDefinition,
    coerce_json_object,
)

logger = logging.getLogger(__name__)


def convert_tools_to_anthropic(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters,
        }
        for tool in tools
    ]


def convert_messages_to_anthropic(
    messages: list[ChatMessage],
) -> tuple[str | None, list[dict[str, Any]]]:
    """Split out the system prompt and translate the rest.

    Tool results become ``tool_result`` blocks inside a user message;
    consecutive results share one user message. Assistant tool invocations
    become mixed text + ``tool_use`` content blocks.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
            continue

        if msg.role == Role.TOOL:
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            }
            last = converted[-1] if converted else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        if msg.role == Role.ASSISTANT and msg.tool_calls:
            content: list[dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                content.append(
                    {
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    }
                )
            converted.append({"role": "assistant", "content": content})
            continue

        converted.append({"role": msg.role.value, "content": msg.content})

    system = "\n\n".join(p for p in system_parts if p) or None
    return system, converted


class ClaudeClient(BaseLLMClient):
    """Anthropic Messages API client."""

    def __init__(self, config: LLMConfig, sdk_client: anthropic.AsyncAnthropic | None = None) -> None:
        super().__init__(config)
        self._client = sdk_client or anthropic.AsyncAnthropic(
            api_key=config.api_key,
            timeout=config.timeout,
        )

    def _build_kwargs(
        self,
        messages: list[ChatMessage],
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        system, converted = convert_messages_to_anthropic(messages)
        kwargs: dict[str, Any] = {
            "model": model or self._config.model,
            "max_tokens": max_tokens or self._config.max_tokens,
            "messages": converted,
        }
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    async def _create(self, kwargs: dict[str, Any]) -> Any:
        try:
            return await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as e:
            raise AIHTTPError(e.status_code, str(e.message)) from e
        except anthropic.APIConnectionError as e:
            raise AIConnectionError(f"Anthropic connection error: {e}") from e

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        response = await self._create(
            self._build_kwargs(messages, model, temperature, max_tokens)
        )
        texts = [
            block.text
            for block in (getattr(response, "content", None) or [])
            if getattr(block, "type", "") == "text"
        ]
        if not texts:
            raise InvalidAIResponseError("no text block in response")
        return "".join(texts)

    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        kwargs = self._build_kwargs(messages, model, temperature, max_tokens)
        if tools:
            kwargs["tools"] = convert_tools_to_anthropic(tools)

        response = await self._create(kwargs)
        blocks = getattr(response, "content", None)
        if blocks is None:
            raise InvalidAIResponseError("missing content")

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in blocks:
            block_type = getattr(block, "type", "")
            if block_type == "text":
                text_parts.append(block.text)
            elif block_type == "tool_use":
                try:
                    arguments = coerce_json_object(block.input or {})
                except TypeError:
                    arguments = {}
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=arguments))

        return ChatResponse(text="".join(text_parts), tool_calls=tool_calls)

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_kwargs(messages, model, temperature, max_tokens)
        text_parts: list[str] = []

        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type == "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta" and delta.text:
                            text_parts.append(delta.text)
                            yield StreamEvent.delta(delta.text)
                    elif event.type == "message_stop":
                        break
        except anthropic.APIStatusError as e:
            raise AIHTTPError(e.status_code, str(e.message)) from e
        except anthropic.APIConnectionError as e:
            raise AIConnectionError(f"Anthropic connection error: {e}") from e

        yield StreamEvent.done("".join(text_parts))

    async def close(self) -> None:
        await self._client.close()
