"""Token accounting and USD cost estimation for a discussion session."""

import logging
from dataclasses import replace
from datetime import datetime

from consensus.models import CostEntry, CostSummary, Phase, TokenUsage, utc_now

logger = logging.getLogger(__name__)

# USD per 1M tokens. Estimates only.
PRICING: dict[str, dict[str, float]] = {
    # OpenAI
    "openai/gpt-5.2": {"input": 5.0, "output": 15.0},
    "openai/gpt-5.2-pro": {"input": 10.0, "output": 30.0},
    "openai/gpt-5": {"input": 3.0, "output": 10.0},
    "openai/gpt-5-mini": {"input": 0.5, "output": 1.5},
    "openai/gpt-4o": {"input": 2.5, "output": 10.0},
    "openai/gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "openai/o3": {"input": 15.0, "output": 60.0},
    "openai/o3-mini": {"input": 3.0, "output": 12.0},
    # Anthropic
    "anthropic/claude-4.5-opus": {"input": 15.0, "output": 75.0},
    "anthropic/claude-4.5-sonnet": {"input": 3.0, "output": 15.0},
    "anthropic/claude-4.5-haiku": {"input": 0.25, "output": 1.25},
    "anthropic/claude-sonnet-4": {"input": 3.0, "output": 15.0},
    # Google
    "google/gemini-3-pro": {"input": 1.25, "output": 5.0},
    "google/gemini-2.5-pro": {"input": 1.25, "output": 5.0},
    "google/gemini-2.5-flash": {"input": 0.075, "output": 0.3},
    "google/gemini-2.5-flash-lite": {"input": 0.02, "output": 0.08},
    # OpenRouter model names
    "deepseek/deepseek-v3": {"input": 0.14, "output": 0.28},
    "deepseek/deepseek-r1": {"input": 0.55, "output": 2.19},
    "x-ai/grok-4": {"input": 5.0, "output": 15.0},
    "x-ai/grok-3": {"input": 3.0, "output": 10.0},
    "moonshotai/kimi-k2.5": {"input": 0.5, "output": 2.0},
    "meta-llama/llama-3.3-70b": {"input": 0.4, "output": 0.4},
    "meta-llama/llama-4-maverick-405b": {"input": 2.0, "output": 2.0},
    "_default": {"input": 1.0, "output": 3.0},
}


def get_pricing(provider: str, model: str) -> dict[str, float]:
    """Look up pricing: exact key, then provider-prefixed partial match, then bare model."""
    key = f"{provider}/{model}"
    if key in PRICING:
        return PRICING[key]

    # First listed key whose model part occurs in the name wins
    prefix = f"{provider}/"
    for pricing_key, pricing in PRICING.items():
        if pricing_key.startswith(prefix) and pricing_key.split("/", 1)[1] in model:
            return pricing

    if model in PRICING:
        return PRICING[model]

    return PRICING["_default"]


def estimate_cost(provider: str, model: str, tokens: TokenUsage) -> float:
    pricing = get_pricing(provider, model)
    input_cost = tokens.prompt_tokens / 1_000_000 * pricing["input"]
    output_cost = tokens.completion_tokens / 1_000_000 * pricing["output"]
    return input_cost + output_cost


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"{cost * 100:.2f}¢"
    return f"${cost:.4f}"


class CostTracker:
    """Append-only ledger of per-call costs for one session."""

    def __init__(self, start_time: datetime | None = None) -> None:
        self.start_time = start_time or utc_now()
        self._entries: list[CostEntry] = []

    @classmethod
    def from_entries(cls, entries: list[CostEntry], start_time: datetime | None = None) -> "CostTracker":
        tracker = cls(start_time)
        tracker._entries = [replace(e, tokens=replace(e.tokens)) for e in entries]
        return tracker

    def record(
        self,
        agent_id: str,
        agent_name: str,
        provider: str,
        model: str,
        tokens: TokenUsage,
        phase: Phase,
        round_num: int,
        timestamp: datetime | None = None,
    ) -> CostEntry:
        cost = estimate_cost(provider, model, tokens)
        entry = CostEntry(
            agent_id=agent_id,
            agent_name=agent_name,
            provider=provider,
            model=model,
            timestamp=timestamp or utc_now(),
            tokens=tokens,
            estimated_cost=cost,
            phase=phase,
            round=round_num,
        )
        self._entries.append(entry)
        logger.debug("Recorded cost %s for %s (%d tokens, %s)", format_cost(cost), agent_name, tokens.total_tokens, model)
        return entry

    def entries(self) -> list[CostEntry]:
        return list(self._entries)

    def total_cost(self) -> float:
        return sum(e.estimated_cost for e in self._entries)

    def total_tokens(self) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=sum(e.tokens.prompt_tokens for e in self._entries),
            completion_tokens=sum(e.tokens.completion_tokens for e in self._entries),
            total_tokens=sum(e.tokens.total_tokens for e in self._entries),
        )

    def summary(self) -> CostSummary:
        by_agent: dict[str, float] = {}
        by_phase: dict[str, float] = {phase.value: 0.0 for phase in Phase}
        by_round: dict[int, float] = {}

        for entry in self._entries:
            by_agent[entry.agent_id] = by_agent.get(entry.agent_id, 0.0) + entry.estimated_cost
            by_phase[entry.phase.value] += entry.estimated_cost
            by_round[entry.round] = by_round.get(entry.round, 0.0) + entry.estimated_cost

        total = self.total_cost()
        count = len(self._entries)
        return CostSummary(
            total_tokens=self.total_tokens(),
            total_cost=total,
            cost_by_agent=by_agent,
            cost_by_phase=by_phase,
            cost_by_round=by_round,
            average_cost_per_message=total / count if count else 0.0,
        )

    def is_over_budget(self, max_cost_usd: float) -> bool:
        return self.total_cost() > max_cost_usd

    def elapsed_ms(self) -> int:
        return int((utc_now() - self.start_time).total_seconds() * 1000)

    def format_summary(self) -> str:
        summary = self.summary()
        tokens = summary.total_tokens
        lines = [
            f"Total Cost: {format_cost(summary.total_cost)}",
            f"Total Tokens: {tokens.total_tokens:,} ({tokens.prompt_tokens:,} in, {tokens.completion_tokens:,} out)",
            f"Messages: {len(self._entries)}",
            f"Avg Cost/Message: {format_cost(summary.average_cost_per_message)}",
            "",
            "By Phase:",
        ]
        lines.extend(
            f"  {phase}: {format_cost(cost)}" for phase, cost in summary.cost_by_phase.items() if cost > 0
        )
        return "\n".join(lines)
