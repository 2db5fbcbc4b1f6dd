"""Exception types shared across the review engine.

Two families matter to callers:

- Inference errors are raised by providers and consumed by the model
  invoker. They never escape a run: the invoker turns them into failed
  InvocationResults. The retryable ones (throttling, timeouts) are retried
  with backoff first.
- Configuration and persistence errors abort the whole run. They are raised
  before any inference happens (unknown model) or in place of the final
  save (concurrent writer), so persisted state is never half-written.
"""

from __future__ import annotations


class PrsentryError(Exception):
    """Base class for all prsentry errors."""


class UnknownModelError(PrsentryError):
    """A model identifier is not registered in the budget table."""

    def __init__(self, model: str):
        super().__init__(model)
        self.model = model

    def __str__(self) -> str:
        return f"Unknown model: {self.model!r}. Register it under 'budgets' in .prsentry.yml."


class PromptBudgetError(PrsentryError):
    """The prompt around the diff alone does not fit a model's input budget."""

    def __init__(self, model: str, needed: int, available: int):
        super().__init__(
            f"Prompt scaffolding for {model!r} needs {needed} tokens but only {available} are available. "
            "Shorten the guidelines file or lower prompt_reserve_tokens."
        )
        self.model = model


class InferenceError(PrsentryError):
    """A call to the inference service failed. Not retried unless a subclass says so."""

    retryable: bool = False


class ThrottledError(InferenceError):
    """The service rejected the request for rate or capacity reasons."""

    retryable = True


class InferenceTimeoutError(InferenceError):
    """The request timed out or the connection dropped before a response arrived."""

    retryable = True


class InvalidInputError(InferenceError):
    """The service rejected the payload itself (too large, malformed)."""


class UnauthorizedError(InferenceError):
    """The credentials were rejected."""


class PersistConflictError(PrsentryError):
    """The review state record changed between this run's load and save."""

    def __init__(self, host_id: str, expected_revision: str | None):
        super().__init__(
            f"Review state for {host_id} was modified by another run "
            f"(expected revision {expected_revision!r}); not saving."
        )
        self.host_id = host_id
        self.expected_revision = expected_revision


# Older name for the same condition.
PersistError = PersistConflictError


class StateFormatError(PrsentryError):
    """A persisted review state record was written by a newer schema version."""


class TruncationWarning(UserWarning):
    """A review unit only covers part of a hunk; findings may be incomplete."""

    def __init__(self, path: str, truncated_after: int | None):
        super().__init__(path, truncated_after)
        self.path = path
        self.truncated_after = truncated_after

    def __str__(self) -> str:
        if self.truncated_after is None:
            return f"{self.path}: diff truncated before any changed line; nothing after the hunk header was reviewed."
        return f"{self.path}: diff truncated; lines after {self.truncated_after} were not reviewed."
