"""Tests for token counting and the per-model budget table."""

import pytest

from prsentry_core.budget import DEFAULT_BUDGETS, BudgetTable, ModelBudget
from prsentry_core.errors import UnknownModelError
from prsentry_core.tokens import Tokenizer


def words(text: str) -> int:
    return len(text.split())


class TestTokenizer:
    def test_uses_injected_counter(self):
        tokenizer = Tokenizer(count_fn=words)
        assert tokenizer.count("one two three") == 3

    def test_empty_text_is_zero_without_calling_counter(self):
        def boom(text):
            raise AssertionError("counter must not be called")

        assert Tokenizer(count_fn=boom).count("") == 0

    def test_fits(self):
        tokenizer = Tokenizer(count_fn=words)
        assert tokenizer.fits("a b", 2)
        assert not tokenizer.fits("a b c", 2)

    def test_truncate_keeps_leading_words_and_marks_the_cut(self):
        tokenizer = Tokenizer(count_fn=words)
        assert tokenizer.truncate("a b c d e f", 4) == "a b c\n[truncated]"
        assert tokenizer.truncate("line one\nline two\nline three", 3) == "line one\n[truncated]"

    def test_truncate_leaves_fitting_text_alone(self):
        assert Tokenizer(count_fn=words).truncate("a b", 2) == "a b"

    def test_truncate_to_nothing(self):
        assert Tokenizer(count_fn=words).truncate("a b c", 1) == ""

    def test_tiktoken_resolved_lazily(self, mocker):
        encoder = mocker.MagicMock()
        encoder.encode.return_value = [1, 2, 3, 4]
        get_encoding = mocker.patch("tiktoken.get_encoding", return_value=encoder)

        tokenizer = Tokenizer(encoding="cl100k_base")
        get_encoding.assert_not_called()
        assert tokenizer.count("hello world") == 4
        assert tokenizer.count("again") == 4
        get_encoding.assert_called_once_with("cl100k_base")


class TestModelBudget:
    def test_reserved_must_be_below_total(self):
        with pytest.raises(ValueError):
            ModelBudget(max_total_tokens=1000, max_output_tokens=100, reserved_output_tokens=1000)


class TestBudgetTable:
    def test_defaults_cover_builtin_models(self):
        table = BudgetTable()
        for model in DEFAULT_BUDGETS:
            assert model in table

    def test_available_input_budget(self):
        table = BudgetTable({"m": ModelBudget(10_000, 1_000, 1_500)})
        assert table.available_input_budget("m") == 8_500
        assert table.max_output_tokens("m") == 1_000

    def test_unknown_model_raises(self):
        table = BudgetTable()
        with pytest.raises(UnknownModelError) as exc_info:
            table.require("not-a-model")
        assert exc_info.value.model == "not-a-model"
        assert "budgets" in str(exc_info.value)

    def test_override_extends_table(self):
        table = BudgetTable.from_overrides({"local-llm": {"max_total_tokens": 8192, "max_output_tokens": 1024}})
        assert table.available_input_budget("local-llm") == 8192 - 1024
        assert "gpt-4o" in table

    def test_override_partially_replaces_builtin(self):
        table = BudgetTable.from_overrides({"gpt-4o": {"reserved_output_tokens": 8000}})
        assert table.require("gpt-4o").max_total_tokens == DEFAULT_BUDGETS["gpt-4o"].max_total_tokens
        assert table.available_input_budget("gpt-4o") == DEFAULT_BUDGETS["gpt-4o"].max_total_tokens - 8000

    def test_override_for_new_model_needs_totals(self):
        with pytest.raises(ValueError):
            BudgetTable.from_overrides({"local-llm": {"max_output_tokens": 1024}})

    def test_table_is_read_only(self):
        table = BudgetTable()
        with pytest.raises(TypeError):
            table._budgets["x"] = ModelBudget(10, 1, 1)
