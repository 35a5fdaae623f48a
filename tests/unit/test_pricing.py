"""Tests for token pricing."""

import pytest

from agent_telemetry.pricing import (
    DEFAULT_PRICING,
    TOKEN_PRICING,
    calculate_cost,
    get_model_pricing,
)


class TestModelPricing:
    def test_exact_match(self):
        assert get_model_pricing("gpt-4o") is TOKEN_PRICING["gpt-4o"]

    def test_first_substring_match_wins(self):
        # "gpt-4o" precedes "gpt-4o-mini" in the table
        assert get_model_pricing("gpt-4o-mini-2024-07-18") is TOKEN_PRICING["gpt-4o"]

    def test_case_insensitive(self):
        assert get_model_pricing("GPT-4-Turbo") is TOKEN_PRICING["gpt-4-turbo"]

    def test_unknown_and_missing(self):
        assert get_model_pricing("mystery-model") is DEFAULT_PRICING
        assert get_model_pricing(None) is DEFAULT_PRICING


class TestCalculateCost:
    def test_gpt_4o(self):
        assert calculate_cost("gpt-4o", 1000, 500) == pytest.approx(0.0075)

    def test_default_pricing(self):
        assert calculate_cost("unknown", 1_000_000, 1_000_000) == pytest.approx(20.0)

    def test_cached_tokens(self):
        assert calculate_cost("gpt-4o", 0, 0, cached_tokens=1_000_000) == pytest.approx(1.25)

    def test_reasoning_billed_at_output_rate(self):
        with_reasoning = calculate_cost("o3-mini", 0, 1000, reasoning_tokens=1000)
        assert with_reasoning == pytest.approx(calculate_cost("o3-mini", 0, 2000))

    def test_zero_tokens(self):
        assert calculate_cost("gpt-4o", 0, 0) == 0.0
