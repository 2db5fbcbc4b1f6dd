"""Base provider implementing the Template Method pattern.

All providers share the same call contract:
    call() → _call_api()        ← only this differs per provider
           → _classify() on failure, mapping SDK exceptions onto the
             InferenceError taxonomy the invoker's retry policy understands

Subclasses implement:
  - __init__: validate and store the SDK client
  - _call_api: make one raw API call and return the text response
  - _classify: translate an SDK exception into an InferenceError

Retries, backoff, rate limiting and concurrency caps live in the invoker,
not here: a provider makes exactly one attempt per call.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from prsentry_core.errors import InferenceError

if TYPE_CHECKING:
    from prsentry_core.prompts import Prompt

logger = logging.getLogger(__name__)


class BaseProvider(ABC):
    name: str = "base"

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def call(self, model: str, prompt: Prompt, max_output_tokens: int) -> str:
        """Make one inference call and return the model's text.

        Raises an InferenceError subclass on every failure, so callers only
        need to reason about the taxonomy, never about SDK exception types.
        """
        try:
            return await self._call_api(model, prompt, max_output_tokens)
        except InferenceError:
            raise
        except Exception as e:
            error = self._classify(e)
            logger.debug("%s call failed (%s): %s", self.__class__.__name__, type(error).__name__, e)
            raise error from e

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def _call_api(self, model: str, prompt: Prompt, max_output_tokens: int) -> str:
        """Make a single API call and return the raw text response."""

    def _classify(self, error: Exception) -> InferenceError:
        """Map an SDK exception to the taxonomy. Unknown errors are not retried."""
        return InferenceError(f"{type(error).__name__}: {error}")
