"""Hard limits with abort semantics, and the round-boundary decision gate.

Gates:
    GO          agreement >= 70%, within budget, no open blockers
    NO-GO       agreement <= 45% or over budget
    EXPAND      anything in between
    NEEDS-HUMAN critical blockers present (only when the human gate is on)
"""

import logging

from consensus.cost_tracker import CostTracker
from consensus.models import (
    AbortReason,
    Blocker,
    BlockerLimit,
    BlockerStatus,
    ConsensusMetrics,
    CostLimit,
    Deadlock,
    DecisionGate,
    DiscussionLimits,
    GateCondition,
    GateMetrics,
    NeedsHuman,
    TimeLimit,
    TokenLimit,
    UserInterrupt,
)

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = DiscussionLimits(
    max_cost_usd=15.0,
    max_duration_ms=45 * 60 * 1000,
    max_tokens=500_000,
    max_blockers=20,
    max_consecutive_disagreements=3,
    require_human_decision=False,
)

# Budget the gate measures against when no cost ceiling is configured
FALLBACK_GATE_BUDGET_USD = 5.0

GATE_NAME = "Decision Gate"


def _critical(blockers: list[Blocker]) -> list[Blocker]:
    return [
        b for b in blockers
        if b.status in (BlockerStatus.OPEN, BlockerStatus.ESCALATED) and b.severity >= 4 and b.confidence >= 4
    ]


def check_limits(
    limits: DiscussionLimits,
    cost_tracker: CostTracker,
    open_blockers: list[Blocker],
) -> AbortReason | None:
    """Return the first triggered limit, or None.

    Order: cost (skipped when unset or <= 0), duration, tokens, open blocker
    count, then critical blockers when the human gate is enabled.
    """
    if limits.max_cost_usd is not None and limits.max_cost_usd > 0:
        spent = cost_tracker.total_cost()
        if spent > limits.max_cost_usd:
            logger.warning("Cost limit exceeded: $%.2f > $%.2f", spent, limits.max_cost_usd)
            return CostLimit(spent=spent, limit=limits.max_cost_usd)

    if limits.max_duration_ms is not None:
        elapsed = cost_tracker.elapsed_ms()
        if elapsed > limits.max_duration_ms:
            logger.warning("Time limit exceeded: %dms > %dms", elapsed, limits.max_duration_ms)
            return TimeLimit(elapsed_ms=elapsed, limit_ms=limits.max_duration_ms)

    if limits.max_tokens is not None:
        used = cost_tracker.total_tokens().total_tokens
        if used > limits.max_tokens:
            logger.warning("Token limit exceeded: %d > %d", used, limits.max_tokens)
            return TokenLimit(used=used, limit=limits.max_tokens)

    if limits.max_blockers is not None:
        count = sum(1 for b in open_blockers if b.status in (BlockerStatus.OPEN, BlockerStatus.DISPUTED))
        if count >= limits.max_blockers:
            logger.warning("Blocker limit exceeded: %d >= %d", count, limits.max_blockers)
            return BlockerLimit(count=count, limit=limits.max_blockers)

    if limits.require_human_decision:
        critical = _critical(open_blockers)
        if critical:
            logger.warning("%d critical blocker(s) need human decision", len(critical))
            return NeedsHuman(blockers=critical)

    return None


def calculate_decision_gate(
    metrics: ConsensusMetrics,
    cost_tracker: CostTracker,
    limits: DiscussionLimits = DEFAULT_LIMITS,
    open_blockers: list[Blocker] | None = None,
) -> DecisionGate:
    cost_spent = cost_tracker.total_cost()
    cost_limit = limits.max_cost_usd or FALLBACK_GATE_BUDGET_USD
    time_spent = cost_tracker.elapsed_ms()
    agreement = metrics.agreement_level * 100

    def gate(condition: GateCondition, blocker_count: int, recommendation: str) -> DecisionGate:
        return DecisionGate(
            name=GATE_NAME,
            condition=condition,
            metrics=GateMetrics(
                agreement_level=agreement,
                cost_spent=cost_spent,
                cost_limit=cost_limit,
                blocker_count=blocker_count,
                time_spent_ms=time_spent,
            ),
            recommendation=recommendation,
        )

    if limits.require_human_decision:
        critical = _critical(open_blockers or [])
        if critical:
            return gate(
                GateCondition.NEEDS_HUMAN,
                len(critical),
                f"{len(critical)} critical blocker(s) require human decision. "
                "Review blockers and provide guidance.",
            )

    over_budget = cost_spent > cost_limit
    if agreement <= 45 or over_budget:
        reasons = []
        if agreement <= 45:
            reasons.append(f"low agreement ({agreement:.0f}%)")
        if over_budget:
            reasons.append(f"over budget (${cost_spent:.2f})")
        return gate(
            GateCondition.NO_GO,
            metrics.blocker_count,
            f"Discussion did not meet success criteria: {', '.join(reasons)}. "
            "Consider simplifying the topic or adjusting approach.",
        )

    if agreement >= 70 and metrics.blocker_count == 0:
        return gate(
            GateCondition.GO,
            metrics.blocker_count,
            f"Discussion successful! {agreement:.0f}% agreement achieved within budget (${cost_spent:.2f}).",
        )

    return gate(
        GateCondition.EXPAND,
        metrics.blocker_count,
        f"Results ambiguous ({agreement:.0f}% agreement). Consider additional rounds or clarifying questions.",
    )


def format_limits(limits: DiscussionLimits) -> str:
    parts = []
    if limits.max_cost_usd is not None:
        parts.append(f"Cost: ${limits.max_cost_usd:.2f}")
    if limits.max_duration_ms is not None:
        parts.append(f"Time: {limits.max_duration_ms / 60000:g}min")
    if limits.max_tokens is not None:
        parts.append(f"Tokens: {limits.max_tokens:,}")
    if limits.max_blockers is not None:
        parts.append(f"Max Blockers: {limits.max_blockers}")
    return " | ".join(parts)


def progress_summary(metrics: ConsensusMetrics, cost_tracker: CostTracker, limits: DiscussionLimits) -> str:
    cost = cost_tracker.total_cost()
    tokens = cost_tracker.total_tokens().total_tokens
    elapsed = cost_tracker.elapsed_ms()

    cost_pct = cost / limits.max_cost_usd * 100 if limits.max_cost_usd else 0
    time_pct = elapsed / limits.max_duration_ms * 100 if limits.max_duration_ms else 0
    token_pct = tokens / limits.max_tokens * 100 if limits.max_tokens else 0
    convergence = f"Round {metrics.convergence_round}" if metrics.convergence_round else "Not yet"

    return "\n".join([
        "Progress Summary:",
        f"  Agreement: {metrics.agreement_level * 100:.0f}%",
        f"  Cost: ${cost:.4f} ({cost_pct:.0f}% of limit)",
        f"  Time: {elapsed / 1000:.0f}s ({time_pct:.0f}% of limit)",
        f"  Tokens: {tokens:,} ({token_pct:.0f}% of limit)",
        f"  Open Blockers: {metrics.blocker_count}",
        f"  Resolved Blockers: {metrics.resolved_blocker_count}",
        f"  Convergence: {convergence}",
    ])


def format_abort_reason(reason: AbortReason) -> str:
    """One display sentence per abort reason."""
    if isinstance(reason, CostLimit):
        return f"Discussion aborted: cost limit exceeded (${reason.spent:.2f} > ${reason.limit:.2f})."
    if isinstance(reason, TimeLimit):
        return (
            f"Discussion aborted: time limit exceeded "
            f"({round(reason.elapsed_ms / 1000)}s > {round(reason.limit_ms / 1000)}s)."
        )
    if isinstance(reason, TokenLimit):
        return f"Discussion aborted: token limit exceeded ({reason.used} > {reason.limit})."
    if isinstance(reason, BlockerLimit):
        return f"Discussion aborted: blocker limit exceeded ({reason.count} >= {reason.limit})."
    if isinstance(reason, Deadlock):
        return f"Discussion aborted: deadlock detected ({reason.description})."
    if isinstance(reason, NeedsHuman):
        return "Discussion paused: human decision required to resolve critical blockers."
    if isinstance(reason, UserInterrupt):
        return f"Discussion interrupted by user ({reason.interrupt_type})."
    return "Discussion aborted due to limit conditions."
