"""Tests for token accounting and cost estimation."""

import pytest

from conduit.api.usage import (
    DEFAULT_PRICING,
    UsageAccountant,
    calculate_cost,
    get_model_pricing,
)
from conduit.providers.base import UsageSnapshot


class TestUsageAccountant:
    def test_last_snapshot_wins_within_iteration(self):
        """Cumulative snapshots (Gemini style) are not double counted."""
        acct = UsageAccountant()
        acct.begin_iteration()
        acct.observe(UsageSnapshot(input_tokens=100, output_tokens=1))
        acct.observe(UsageSnapshot(input_tokens=100, output_tokens=2))
        acct.observe(UsageSnapshot(input_tokens=100, output_tokens=3))
        acct.commit_iteration()

        assert acct.totals.input_tokens == 100
        assert acct.totals.output_tokens == 3

    def test_partial_snapshots_merge(self):
        """Anthropic reports input and output in different events."""
        acct = UsageAccountant()
        acct.begin_iteration()
        acct.observe(UsageSnapshot(input_tokens=50, output_tokens=1))
        acct.observe(UsageSnapshot(output_tokens=20))
        acct.commit_iteration()

        assert (acct.totals.input_tokens, acct.totals.output_tokens) == (50, 20)

    def test_iterations_are_summed(self):
        acct = UsageAccountant()
        for input_tokens, output_tokens in [(10, 5), (30, 7), (60, 2)]:
            acct.begin_iteration()
            acct.observe(UsageSnapshot(input_tokens=input_tokens, output_tokens=output_tokens))
            acct.commit_iteration()

        assert acct.totals.input_tokens == 100
        assert acct.totals.output_tokens == 14
        assert acct.totals.total == 114
        assert acct.iterations == 3

    def test_iteration_without_usage_adds_nothing(self):
        acct = UsageAccountant()
        acct.begin_iteration()
        acct.commit_iteration()

        assert acct.totals.total == 0

    def test_totals_is_a_copy(self):
        acct = UsageAccountant()
        totals = acct.totals
        totals.input_tokens = 999

        assert acct.totals.input_tokens == 0


class TestPricing:
    def test_longest_prefix_wins(self):
        assert get_model_pricing("gpt-4o-mini-2024-07-18").input == 0.15
        assert get_model_pricing("gpt-4o-2024-08-06").input == 2.5

    def test_vendor_prefix_stripped(self):
        assert get_model_pricing("anthropic:claude-opus-4-1").output == 75.0

    def test_unknown_model_uses_default(self):
        assert get_model_pricing("something-new") == DEFAULT_PRICING

    def test_calculate_cost(self):
        cost = calculate_cost("claude-sonnet-4-5", 1_000_000, 100_000)

        assert cost == pytest.approx(3.0 + 1.5)

    def test_local_models_are_free(self):
        assert calculate_cost("ollama:llama3.1", 10_000, 10_000) == 0.0

    def test_accountant_cost(self):
        acct = UsageAccountant()
        acct.begin_iteration()
        acct.observe(UsageSnapshot(input_tokens=2_000_000, output_tokens=0))
        acct.commit_iteration()

        assert acct.cost("gpt-4.1") == pytest.approx(4.0)
