"""Tests for consensus/limits.py."""

from datetime import timedelta

from consensus.cost_tracker import CostTracker
from consensus.limits import (
    DEFAULT_LIMITS,
    calculate_decision_gate,
    check_limits,
    format_abort_reason,
    format_limits,
    progress_summary,
)
from consensus.models import (
    BlockerLimit,
    BlockerStatus,
    ConsensusMetrics,
    CostLimit,
    Deadlock,
    DiscussionLimits,
    GateCondition,
    NeedsHuman,
    Phase,
    TimeLimit,
    TokenLimit,
    TokenUsage,
    UserInterrupt,
    utc_now,
)
from tests.conftest import make_blocker


def _tracker_with(prompt_tokens: int = 0, start_offset_sec: int = 0) -> CostTracker:
    tracker = CostTracker(start_time=utc_now() - timedelta(seconds=start_offset_sec))
    if prompt_tokens:
        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=0, total_tokens=prompt_tokens)
        tracker.record("a", "A", "openai", "gpt-4o", usage, Phase.OPENING, 1)
    return tracker


def test_no_limits_hit():
    assert check_limits(DEFAULT_LIMITS, _tracker_with(1000), []) is None


def test_cost_limit():
    reason = check_limits(DiscussionLimits(max_cost_usd=1.0), _tracker_with(1_000_000), [])
    assert isinstance(reason, CostLimit)
    assert reason.spent == 2.5
    assert reason.limit == 1.0


def test_zero_cost_limit_is_ignored():
    assert check_limits(DiscussionLimits(max_cost_usd=0), _tracker_with(1_000_000), []) is None


def test_cost_checked_before_tokens():
    limits = DiscussionLimits(max_cost_usd=1.0, max_tokens=10)
    assert isinstance(check_limits(limits, _tracker_with(1_000_000), []), CostLimit)


def test_time_limit():
    reason = check_limits(DiscussionLimits(max_duration_ms=1000), _tracker_with(start_offset_sec=5), [])
    assert isinstance(reason, TimeLimit)
    assert reason.limit_ms == 1000


def test_token_limit():
    reason = check_limits(DiscussionLimits(max_tokens=100), _tracker_with(500), [])
    assert isinstance(reason, TokenLimit)
    assert reason.used == 500


def test_blocker_limit_counts_open_only():
    blockers = [
        make_blocker("b1", condition="First long blocker condition"),
        make_blocker("b2", condition="Second long blocker condition"),
        make_blocker("b3", condition="Third long blocker condition", status=BlockerStatus.ADDRESSED),
    ]
    reason = check_limits(DiscussionLimits(max_blockers=2), _tracker_with(), blockers)
    assert isinstance(reason, BlockerLimit)
    assert reason.count == 2

    assert check_limits(DiscussionLimits(max_blockers=3), _tracker_with(), blockers) is None


def test_needs_human_only_when_enabled():
    blockers = [make_blocker(severity=5, confidence=4)]
    assert check_limits(DiscussionLimits(), _tracker_with(), blockers) is None

    reason = check_limits(DiscussionLimits(require_human_decision=True), _tracker_with(), blockers)
    assert isinstance(reason, NeedsHuman)
    assert reason.blockers == blockers


def test_needs_human_ignores_low_confidence():
    blockers = [make_blocker(severity=5, confidence=3)]
    assert check_limits(DiscussionLimits(require_human_decision=True), _tracker_with(), blockers) is None


def test_gate_go():
    gate = calculate_decision_gate(ConsensusMetrics(agreement_level=0.8), _tracker_with())
    assert gate.condition == GateCondition.GO
    assert gate.metrics.agreement_level == 80.0


def test_gate_no_go_on_low_agreement():
    gate = calculate_decision_gate(ConsensusMetrics(agreement_level=0.3), _tracker_with())
    assert gate.condition == GateCondition.NO_GO
    assert "low agreement" in gate.recommendation


def test_gate_no_go_over_budget():
    gate = calculate_decision_gate(
        ConsensusMetrics(agreement_level=0.9), _tracker_with(1_000_000), DiscussionLimits(max_cost_usd=1.0)
    )
    assert gate.condition == GateCondition.NO_GO
    assert "over budget" in gate.recommendation


def test_gate_expand_when_blockers_remain():
    gate = calculate_decision_gate(ConsensusMetrics(agreement_level=0.8, blocker_count=1), _tracker_with())
    assert gate.condition == GateCondition.EXPAND


def test_gate_falls_back_to_default_budget():
    gate = calculate_decision_gate(ConsensusMetrics(agreement_level=0.6), _tracker_with(), DiscussionLimits())
    assert gate.metrics.cost_limit == 5.0
    assert gate.condition == GateCondition.EXPAND


def test_gate_needs_human():
    gate = calculate_decision_gate(
        ConsensusMetrics(agreement_level=0.9),
        _tracker_with(),
        DiscussionLimits(require_human_decision=True),
        [make_blocker()],
    )
    assert gate.condition == GateCondition.NEEDS_HUMAN
    assert gate.metrics.blocker_count == 1


def test_format_abort_reason_sentences():
    assert format_abort_reason(CostLimit(spent=2.5, limit=1.0)) == (
        "Discussion aborted: cost limit exceeded ($2.50 > $1.00)."
    )
    assert format_abort_reason(TimeLimit(elapsed_ms=61000, limit_ms=60000)) == (
        "Discussion aborted: time limit exceeded (61s > 60s)."
    )
    assert format_abort_reason(TokenLimit(used=11, limit=10)) == "Discussion aborted: token limit exceeded (11 > 10)."
    assert format_abort_reason(BlockerLimit(count=3, limit=3)) == (
        "Discussion aborted: blocker limit exceeded (3 >= 3)."
    )
    assert "deadlock" in format_abort_reason(Deadlock(description="tied"))
    assert format_abort_reason(NeedsHuman(blockers=[])).startswith("Discussion paused")
    assert format_abort_reason(UserInterrupt(interrupt_type="hard")) == "Discussion interrupted by user (hard)."


def test_format_limits():
    text = format_limits(DEFAULT_LIMITS)
    assert "Cost: $15.00" in text
    assert "Time: 45min" in text
    assert "Tokens: 500,000" in text
    assert "Max Blockers: 20" in text


def test_progress_summary():
    text = progress_summary(ConsensusMetrics(agreement_level=0.5, convergence_round=2), _tracker_with(), DEFAULT_LIMITS)
    assert "Agreement: 50%" in text
    assert "Convergence: Round 2" in text
