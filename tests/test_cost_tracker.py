"""Tests for consensus/cost_tracker.py."""

from datetime import timedelta

import pytest

from consensus.cost_tracker import PRICING, CostTracker, estimate_cost, format_cost, get_pricing
from consensus.models import Phase, TokenUsage, utc_now


def _usage(prompt: int, completion: int) -> TokenUsage:
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def test_exact_pricing_key():
    assert get_pricing("openai", "gpt-4o") == {"input": 2.5, "output": 10.0}


def test_partial_match_within_provider():
    assert get_pricing("anthropic", "claude-sonnet-4-20250514") == PRICING["anthropic/claude-sonnet-4"]


def test_bare_model_key_for_openrouter_names():
    assert get_pricing("openrouter", "deepseek/deepseek-v3") == PRICING["deepseek/deepseek-v3"]


def test_unknown_model_uses_default():
    assert get_pricing("ollama", "llama3.1") == PRICING["_default"]


def test_estimate_cost_per_million():
    cost = estimate_cost("openai", "gpt-4o", _usage(1_000_000, 100_000))
    assert cost == pytest.approx(2.5 + 1.0)


def test_format_cost():
    assert format_cost(0.005) == "0.50¢"
    assert format_cost(1.5) == "$1.5000"


def test_totals_and_summary():
    tracker = CostTracker()
    tracker.record("alice", "Alice", "openai", "gpt-4o", _usage(1000, 500), Phase.OPENING, 1)
    tracker.record("bob", "Bob", "openai", "gpt-4o", _usage(2000, 0), Phase.DISCUSSION, 2)
    tracker.record("alice", "Alice", "openai", "gpt-4o", _usage(0, 1000), Phase.DISCUSSION, 2)

    tokens = tracker.total_tokens()
    assert tokens.prompt_tokens == 3000
    assert tokens.completion_tokens == 1500
    assert tokens.total_tokens == 4500

    summary = tracker.summary()
    assert summary.total_cost == pytest.approx(tracker.total_cost())
    assert set(summary.cost_by_agent) == {"alice", "bob"}
    assert summary.cost_by_phase["SYNTHESIS"] == 0.0
    assert set(summary.cost_by_round) == {1, 2}
    assert summary.average_cost_per_message == pytest.approx(tracker.total_cost() / 3)


def test_empty_summary():
    summary = CostTracker().summary()
    assert summary.total_cost == 0.0
    assert summary.average_cost_per_message == 0.0


def test_is_over_budget():
    tracker = CostTracker()
    tracker.record("a", "A", "openai", "gpt-4o", _usage(1_000_000, 0), Phase.OPENING, 1)
    assert tracker.is_over_budget(2.0)
    assert not tracker.is_over_budget(2.5)


def test_elapsed_uses_start_time():
    tracker = CostTracker(start_time=utc_now() - timedelta(seconds=30))
    assert tracker.elapsed_ms() >= 30_000


def test_from_entries_copies_ledger():
    original = CostTracker()
    original.record("a", "A", "openai", "gpt-4o", _usage(10, 10), Phase.OPENING, 1)
    restored = CostTracker.from_entries(original.entries())
    restored.record("b", "B", "openai", "gpt-4o", _usage(10, 10), Phase.OPENING, 1)

    assert len(original.entries()) == 1
    assert len(restored.entries()) == 2
    assert restored.entries()[0].tokens is not original.entries()[0].tokens


def test_format_summary_lists_used_phases_only():
    tracker = CostTracker()
    tracker.record("a", "A", "openai", "gpt-4o", _usage(1000, 1000), Phase.DISCUSSION, 1)
    text = tracker.format_summary()
    assert "Messages: 1" in text
    assert "DISCUSSION" in text
    assert "OPENING" not in text
