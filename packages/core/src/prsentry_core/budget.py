"""Per-model token ceilings.

The table is fixed when the run starts: built-in entries for the default
models, optionally overridden or extended from the `budgets` section of
.prsentry.yml. Nothing mutates it afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from prsentry_core.errors import UnknownModelError


@dataclass(frozen=True)
class ModelBudget:
    max_total_tokens: int
    max_output_tokens: int
    # Context tokens held back for the response. Usually equal to
    # max_output_tokens, but may be larger to leave room for the prompt
    # scaffolding around the diff.
    reserved_output_tokens: int

    def __post_init__(self):
        if self.reserved_output_tokens >= self.max_total_tokens:
            raise ValueError("reserved_output_tokens must be smaller than max_total_tokens")


DEFAULT_BUDGETS: dict[str, ModelBudget] = {
    "claude-sonnet-4-20250514": ModelBudget(200_000, 8_192, 8_192),
    "claude-3-5-haiku-latest": ModelBudget(200_000, 4_096, 4_096),
    "gpt-4o": ModelBudget(128_000, 4_096, 4_096),
    "gpt-4o-mini": ModelBudget(128_000, 4_096, 4_096),
}


class BudgetTable:
    def __init__(self, budgets: Mapping[str, ModelBudget] | None = None):
        self._budgets = MappingProxyType(dict(DEFAULT_BUDGETS if budgets is None else budgets))

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Mapping[str, int]] | None) -> BudgetTable:
        """Build a table from the built-in defaults plus config overrides.

        Each override may give any of max_total_tokens, max_output_tokens and
        reserved_output_tokens; missing keys come from the built-in entry when
        one exists. reserved_output_tokens defaults to max_output_tokens.
        """
        merged = dict(DEFAULT_BUDGETS)
        for model, values in (overrides or {}).items():
            base = merged.get(model)
            max_total = values.get("max_total_tokens", base.max_total_tokens if base else None)
            max_output = values.get("max_output_tokens", base.max_output_tokens if base else None)
            if max_total is None or max_output is None:
                raise ValueError(f"Budget for {model!r} needs max_total_tokens and max_output_tokens.")
            reserved = values.get("reserved_output_tokens", max_output)
            merged[model] = ModelBudget(int(max_total), int(max_output), int(reserved))
        return cls(merged)

    def __contains__(self, model: str) -> bool:
        return model in self._budgets

    def require(self, model: str) -> ModelBudget:
        try:
            return self._budgets[model]
        except KeyError:
            raise UnknownModelError(model) from None

    def available_input_budget(self, model: str) -> int:
        budget = self.require(model)
        return budget.max_total_tokens - budget.reserved_output_tokens

    def max_output_tokens(self, model: str) -> int:
        return self.require(model).max_output_tokens
