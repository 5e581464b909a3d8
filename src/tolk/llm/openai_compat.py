"""OpenAI-compatible chat completions client over httpx.

Handles plain chat, tool calling and ``data:``-framed SSE streaming.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from tolk.core.http import make_httpx_client
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


def convert_tools_to_openai(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    """Convert tool definitions to OpenAI function format."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def convert_messages_to_openai(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert neutral messages to the OpenAI wire shape.

    OpenAI keeps the ``tool`` role; assistant tool invocations become
    ``tool_calls`` with JSON-encoded arguments.
    """
    openai_messages: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.TOOL:
            openai_messages.append(
                {
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                }
            )
        elif msg.role == Role.ASSISTANT and msg.tool_calls:
            msg_dict: dict[str, Any] = {
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ],
            }
            openai_messages.append(msg_dict)
        else:
            openai_messages.append({"role": msg.role.value, "content": msg.content})

    return openai_messages


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return coerce_json_object(raw)
    if not raw:
        return {}
    try:
        return coerce_json_object(json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        logger.warning("Discarding unparseable tool arguments: %r", raw[:200])
        return {}


class OpenAICompatibleClient(BaseLLMClient):
    """Client for OpenAI-compatible chat completion APIs."""

    def __init__(self, config: LLMConfig, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config)
        self._client = http_client or make_httpx_client(timeout=config.timeout)

    def _get_chat_url(self) -> str:
        base = (self._config.base_url or "https://api.openai.com/v1").rstrip("/")
        return f"{base}/chat/completions"

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

    def _build_body(
        self,
        messages: list[ChatMessage],
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model or self._config.model,
            "messages": convert_messages_to_openai(messages),
        }
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        return body

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._get_chat_url(),
                json=body,
                headers=self._get_headers(),
                timeout=self._config.timeout,
            )
        except httpx.HTTPError as e:
            raise AIConnectionError(f"OpenAI connection error: {e}") from e

        if not response.is_success:
            raise AIHTTPError(response.status_code, response.text)

        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise InvalidAIResponseError("response is not JSON") from e

    @staticmethod
    def _first_message(data: dict[str, Any]) -> dict[str, Any]:
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidAIResponseError("missing choices[0].message") from e
        if not isinstance(message, dict):
            raise InvalidAIResponseError("message is not an object")
        return message

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        data = await self._post(self._build_body(messages, model, temperature, max_tokens))
        content = self._first_message(data).get("content")
        if not isinstance(content, str):
            raise InvalidAIResponseError("message has no text content")
        return content

    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        body = self._build_body(messages, model, temperature, max_tokens)
        if tools:
            body["tools"] = convert_tools_to_openai(tools)

        message = self._first_message(await self._post(body))
        tool_calls: list[ToolCall] = []
        for idx, raw in enumerate(message.get("tool_calls") or []):
            function = raw.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=raw.get("id") or f"tool_{idx}",
                    name=function.get("name", ""),
                    arguments=_parse_arguments(function.get("arguments")),
                )
            )

        return ChatResponse(text=message.get("content") or "", tool_calls=tool_calls)

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        body = self._build_body(messages, model, temperature, max_tokens)
        body["stream"] = True
        text_parts: list[str] = []

        try:
            async with self._client.stream(
                "POST",
                self._get_chat_url(),
                json=body,
                headers=self._get_headers(),
                timeout=self._config.stream_timeout,
            ) as response:
                if not response.is_success:
                    error_text = await response.aread()
                    raise AIHTTPError(
                        response.status_code, error_text.decode(errors="replace")
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    payload = line[6:]
                    if payload == "[DONE]":
                        break
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError:
                        continue

                    choices = data.get("choices") or [{}]
                    content = (choices[0].get("delta") or {}).get("content")
                    if content:
                        text_parts.append(content)
                        yield StreamEvent.delta(content)
        except httpx.HTTPError as e:
            raise AIConnectionError(f"OpenAI connection error: {e}") from e

        yield StreamEvent.done("".join(text_parts))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
