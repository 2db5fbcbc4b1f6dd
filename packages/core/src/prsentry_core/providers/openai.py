from __future__ import annotations

from typing import TYPE_CHECKING

try:
    import openai as _openai
except ImportError:
    _openai = None  # type: ignore[assignment]

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


class OpenAIProvider(BaseProvider):
    name = "openai"
    # temperature=0.2 for OpenAI — lower than Anthropic's 0.3 to lean toward
    # more deterministic, structured JSON output from GPT-4o.
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, client=None):
        if _openai is None:
            raise ImportError(
                "The 'openai' package is required for this provider. " "Install it with: pip install 'prsentry[openai]'"
            )
        self.client = client if client is not None else _openai.AsyncOpenAI(api_key=api_key, max_retries=0)

    async def _call_api(self, model: str, prompt: Prompt, max_output_tokens: int) -> str:
        response = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": prompt.system}, *prompt.messages],
            temperature=self.TEMPERATURE,
            max_tokens=max_output_tokens,
        )
        return response.choices[0].message.content or ""

    def _classify(self, error: Exception) -> InferenceError:
        message = f"{type(error).__name__}: {error}"
        if isinstance(error, _openai.RateLimitError):
            return ThrottledError(message)
        if isinstance(error, (_openai.APITimeoutError, _openai.APIConnectionError)):
            return InferenceTimeoutError(message)
        if isinstance(error, (_openai.AuthenticationError, _openai.PermissionDeniedError)):
            return UnauthorizedError(message)
        if isinstance(error, _openai.APIStatusError):
            if error.status_code >= 500:
                return InferenceTimeoutError(message)
            return InvalidInputError(message)
        return InferenceError(message)
