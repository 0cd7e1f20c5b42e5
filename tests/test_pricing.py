"""Tests for token pricing."""

from unittest.mock import patch

import pytest

from quota_library.cost.pricing import (
    claude_cost_usd,
    codex_cost_usd,
    cost_usd,
    litellm_cost_usd,
    normalize_claude_model,
    normalize_codex_model,
)


class TestNormalization:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("openai/gpt-5-codex", "gpt-5"),
            ("gpt-5.2-codex", "gpt-5.2"),
            (" gpt-5 ", "gpt-5"),
            ("o3-mini", "o3-mini"),
        ],
    )
    def test_codex(self, raw, expected):
        assert normalize_codex_model(raw) == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("us.anthropic.claude-sonnet-4-5-20250929-v1:0", "claude-sonnet-4-5"),
            ("anthropic.claude-haiku-4-5-20251001", "claude-haiku-4-5-20251001"),
            ("claude-opus-4-1-20250805", "claude-opus-4-1"),
            ("claude-future-model", "claude-future-model"),
        ],
    )
    def test_claude(self, raw, expected):
        assert normalize_claude_model(raw) == expected


class TestCodexCost:
    def test_cached_tokens_are_discounted(self):
        assert codex_cost_usd("gpt-5", 1000, 200, 100) == pytest.approx(0.002025)

    def test_cached_is_clamped_to_input(self):
        assert codex_cost_usd("gpt-5", 100, 500, 0) == pytest.approx(100 * 1.25e-7)

    def test_unknown_model(self):
        assert codex_cost_usd("mystery", 10, 0, 10) is None


class TestClaudeCost:
    def test_long_context_tier(self):
        assert claude_cost_usd("claude-sonnet-4-5", 250_000, 0, 0, 0) == pytest.approx(0.9)

    def test_untiered_model(self):
        cost = claude_cost_usd("claude-opus-4-1", 1000, 1000, 1000, 1000)
        assert cost == pytest.approx(1000 * (1.5e-5 + 1.5e-6 + 1.875e-5 + 7.5e-5))


class TestFallback:
    def test_unknown_without_litellm_is_none(self):
        assert cost_usd("claude", "claude-imaginary-9", 10, 0, 0, 10, use_litellm=False) is None

    def test_litellm_model_map_is_used(self):
        info = {
            "input_cost_per_token": 1e-6,
            "output_cost_per_token": 2e-6,
            "cache_read_input_token_cost": 1e-7,
        }
        with patch("quota_library.cost.pricing._litellm_model_info", return_value=info):
            cost = cost_usd("codex", "o3-mini", 1000, 400, 0, 100)
        assert cost == pytest.approx(600 * 1e-6 + 400 * 1e-7 + 100 * 2e-6)

    def test_litellm_unknown_model(self):
        with patch("quota_library.cost.pricing._litellm_model_info", return_value=None):
            assert litellm_cost_usd("nothing", 10) is None
