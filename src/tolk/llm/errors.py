"""AI provider errors, split by what the user has to do about them."""

from __future__ import annotations


class AIProviderError(Exception):
    kind = "provider_error"


class NoAPIKeyError(AIProviderError):
    kind = "no_api_key"

    def __init__(self) -> None:
        super().__init__(
            "No AI API key configured. Add your OpenAI or Anthropic API key in settings."
        )


class AIHTTPError(AIProviderError):
    kind = "provider_error"

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body[:500]
        super().__init__(f"AI request failed (HTTP {status_code}): {self.body}")


class AIConnectionError(AIProviderError):
    kind = "provider_error"


class InvalidAIResponseError(AIProviderError):
    kind = "malformed_response"

    def __init__(self, detail: str = "") -> None:
        message = "Invalid response from AI provider"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
