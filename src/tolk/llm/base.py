"""Abstract base class for LLM clients and the shared tool-calling loop."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable

from tolk.llm.types import (
    ChatMessage,
    ChatResponse,
    LLMConfig,
    StreamEvent,
    ToolCall,
    ToolDefinition,
    ToolResult,
)

logger = logging.getLogger(__name__)

# Type for the tool executor callback
ToolExecutor = Callable[[ToolCall], Awaitable[ToolResult]]

GIVE_UP_TEXT = "Stopped: the assistant kept requesting tools without producing an answer."


class BaseLLMClient(ABC):
    """Chat, tool-calling and streaming over one backend protocol."""

    def __init__(self, config: LLMConfig) -> None:
        self._config = config

    @property
    def provider(self) -> str:
        return self._config.provider.value

    @property
    def model(self) -> str:
        return self._config.model

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Single non-streaming completion returning the assistant text."""
        ...

    @abstractmethod
    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        """One non-streaming round-trip that may come back with tool calls."""
        ...

    @abstractmethod
    def chat_stream(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield text deltas, then a single DONE event carrying the full text."""
        ...

    async def run_tool_loop(
        self,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        tool_executor: ToolExecutor,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_tool_rounds: int = 10,
    ) -> str:
        """Call the model, run requested tools, and repeat until it answers.

        Each round is one request with the full history. Tool results are
        appended as ``tool`` messages in call order. After
        ``max_tool_rounds`` rounds without a final answer the turn ends
        with :data:`GIVE_UP_TEXT`.
        """
        history = list(messages)

        for round_no in range(max_tool_rounds):
            response = await self.chat_with_tools(
                history,
                tools,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            if not response.wants_tools:
                return response.text

            logger.debug(
                "Tool round %d: %s",
                round_no + 1,
                ", ".join(tc.name for tc in response.tool_calls),
            )
            history.append(ChatMessage.assistant(response.text, response.tool_calls))
            for tc in response.tool_calls:
                result = await tool_executor(tc)
                history.append(ChatMessage.tool(result))

        logger.warning("Tool loop gave up after %d rounds", max_tool_rounds)
        return GIVE_UP_TEXT

    async def close(self) -> None:
        """Release network resources."""
