"""Round scheduling strategies: map a discussion depth onto per-round plans."""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


class RoundMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ContextMode(str, Enum):
    FULL = "full"
    DEBATE = "debate"
    ANONYMOUS = "anonymous"


class SummaryMode(str, Enum):
    STANDARD = "standard"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class RoundPlan:
    round: int
    mode: RoundMode
    context_mode: ContextMode
    summary_mode: SummaryMode
    rotate_offset: int = 0


@dataclass(frozen=True)
class DiscussionAlgorithm:
    name: str
    description: str
    plan_round: Callable[[int, int], RoundPlan]     # (round, total discussion rounds) -> plan


def _sequential(round_num: int, total: int) -> RoundPlan:
    return RoundPlan(round_num, RoundMode.SEQUENTIAL, ContextMode.FULL, SummaryMode.STANDARD)


def _parallel_sequential(round_num: int, total: int) -> RoundPlan:
    is_parallel_vote = total >= 3 and round_num == total
    mode = RoundMode.PARALLEL if round_num == 1 or is_parallel_vote else RoundMode.SEQUENTIAL
    return RoundPlan(round_num, mode, ContextMode.FULL, SummaryMode.STANDARD)


def _six_hats(round_num: int, total: int) -> RoundPlan:
    return RoundPlan(round_num, RoundMode.PARALLEL, ContextMode.FULL, SummaryMode.STANDARD)


def _debate(round_num: int, total: int) -> RoundPlan:
    return RoundPlan(
        round_num, RoundMode.SEQUENTIAL, ContextMode.DEBATE, SummaryMode.STANDARD,
        rotate_offset=round_num - 1,
    )


def _delphi(round_num: int, total: int) -> RoundPlan:
    return RoundPlan(round_num, RoundMode.PARALLEL, ContextMode.ANONYMOUS, SummaryMode.ANONYMOUS)


ALGORITHMS: dict[str, DiscussionAlgorithm] = {
    "sequential": DiscussionAlgorithm(
        "sequential",
        "Every agent speaks in turn each round with the full discussion in view.",
        _sequential,
    ),
    "parallel-sequential": DiscussionAlgorithm(
        "parallel-sequential",
        "Round 1 divergent parallel broadcast, middle rounds sequential synthesis, "
        "final round parallel vote when available.",
        _parallel_sequential,
    ),
    "six-hats": DiscussionAlgorithm(
        "six-hats",
        "Simultaneous multi-perspective ideation: every round is parallel.",
        _six_hats,
    ),
    "debate": DiscussionAlgorithm(
        "debate",
        "Structured rebuttal format with rotating speaker order and argument-focused context.",
        _debate,
    ),
    "delphi": DiscussionAlgorithm(
        "delphi",
        "Anonymous parallel rounds with aggregated summaries to reduce groupthink before convergence.",
        _delphi,
    ),
}

DEFAULT_ALGORITHM = "sequential"


def get_algorithm(name: str | None) -> DiscussionAlgorithm:
    """Return the named algorithm, falling back to sequential for unknown names."""
    if not name:
        return ALGORITHMS[DEFAULT_ALGORITHM]
    return ALGORITHMS.get(name, ALGORITHMS[DEFAULT_ALGORITHM])


def list_algorithms() -> list[DiscussionAlgorithm]:
    return list(ALGORITHMS.values())


def create_round_plans(
    depth: int,
    start_round: int = 1,
    agent_count: int = 0,
    algorithm: str | None = DEFAULT_ALGORITHM,
) -> list[RoundPlan]:
    """Build the discussion-round plans for a session.

    ``depth`` counts every round including the final synthesis round, so the
    number of discussion rounds is ``max(1, depth - 1)``. Plans are returned
    for rounds ``start_round`` (clamped to 1) through that total.

    Pure and deterministic: the same inputs always produce the same plans.
    ``agent_count`` is accepted for strategies that size rounds by panel.
    """
    total = max(1, depth - 1)
    start = max(1, start_round)
    strategy = get_algorithm(algorithm)
    return [strategy.plan_round(round_num, total) for round_num in range(start, total + 1)]
