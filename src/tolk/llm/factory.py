"""Build the configured AI client from settings."""

from __future__ import annotations

import logging

from tolk.core.config import Settings
from tolk.llm.base import BaseLLMClient
from tolk.llm.client import ClaudeClient
from tolk.llm.openai_compat import OpenAICompatibleClient
from tolk.llm.types import LLMConfig, Provider

logger = logging.getLogger(__name__)


def make_client(settings: Settings) -> BaseLLMClient | None:
    """Return a client for the user's key, or ``None`` when no key is set."""
    if not settings.ai_api_key:
        return None

    if settings.ai_provider.lower() == Provider.ANTHROPIC.value:
        config = LLMConfig(
            provider=Provider.ANTHROPIC,
            model=settings.anthropic_model,
            api_key=settings.ai_api_key,
            max_tokens=settings.ai_max_tokens,
            timeout=settings.ai_timeout,
            stream_timeout=settings.ai_stream_timeout,
        )
        logger.debug("Using Anthropic provider (%s)", config.model)
        return ClaudeClient(config)

    config = LLMConfig(
        provider=Provider.OPENAI,
        model=settings.openai_model,
        api_key=settings.ai_api_key,
        max_tokens=settings.ai_max_tokens,
        base_url=settings.openai_base_url,
        timeout=settings.ai_timeout,
        stream_timeout=settings.ai_stream_timeout,
    )
    logger.debug("Using OpenAI provider (%s)", config.model)
    return OpenAICompatibleClient(config)
