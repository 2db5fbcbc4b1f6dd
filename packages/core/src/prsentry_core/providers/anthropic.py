from __future__ import annotations

from typing import TYPE_CHECKING

from prsentry_core.errors import (
    InferenceError,
    InferenceTimeoutError,
    InvalidInputError,
    ThrottledError,
    UnauthorizedError,
)
from prsentry_core.providers.base import BaseProvider

if TYPE_CHECKING:
    from prsentry_core.prompts import Prompt

# 529 is Anthropic's "overloaded" status; treat it like a 429.
_THROTTLE_STATUSES = {429, 529}


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    # temperature=0.3 for Anthropic — slightly higher than OpenAI's 0.2 to
    # allow more natural phrasing in review comments while keeping the output
    # deterministic enough for consistent JSON structure.
    TEMPERATURE = 0.3

    def __init__(self, api_key: str, client=None):
        if client is not None:
            self.client = client
            return
        try:
            from anthropic import AsyncAnthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install 'prsentry[anthropic]'"
            )
        # The SDK's own retries would hide throttling from the invoker's backoff.
        self.client = AsyncAnthropic(api_key=api_key, max_retries=0)

    async def _call_api(self, model: str, prompt: Prompt, max_output_tokens: int) -> str:
        response = await self.client.messages.create(
            model=model,
            system=prompt.system,
            messages=list(prompt.messages),
            temperature=self.TEMPERATURE,
            max_tokens=max_output_tokens,
        )
        text_blocks = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        return "".join(text_blocks).strip()

    def _classify(self, error: Exception) -> InferenceError:
        # Imported here because the anthropic package is optional; a client
        # passed in by tests may raise before the SDK was ever imported.
        import anthropic

        message = f"{type(error).__name__}: {error}"
        if isinstance(error, anthropic.RateLimitError):
            return ThrottledError(message)
        if isinstance(error, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
            return InferenceTimeoutError(message)
        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return UnauthorizedError(message)
        if isinstance(error, anthropic.APIStatusError):
            if error.status_code in _THROTTLE_STATUSES:
                return ThrottledError(message)
            if error.status_code >= 500:
                return InferenceTimeoutError(message)
            return InvalidInputError(message)
        return InferenceError(message)
