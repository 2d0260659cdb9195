"""Tests for consensus/algorithms.py."""

import pytest

from consensus.algorithms import (
    ContextMode,
    RoundMode,
    SummaryMode,
    create_round_plans,
    get_algorithm,
    list_algorithms,
)


def test_sequential_plans_cover_discussion_rounds():
    plans = create_round_plans(depth=4)
    assert [p.round for p in plans] == [1, 2, 3]
    assert all(p.mode == RoundMode.SEQUENTIAL for p in plans)
    assert all(p.context_mode == ContextMode.FULL for p in plans)


def test_depth_one_still_yields_one_round():
    plans = create_round_plans(depth=1)
    assert [p.round for p in plans] == [1]


def test_start_round_is_respected():
    plans = create_round_plans(depth=5, start_round=3)
    assert [p.round for p in plans] == [3, 4]


def test_start_round_clamped_to_one():
    plans = create_round_plans(depth=3, start_round=-2)
    assert plans[0].round == 1


def test_unknown_algorithm_falls_back_to_sequential():
    assert get_algorithm("no-such-thing").name == "sequential"
    assert get_algorithm(None).name == "sequential"


def test_parallel_sequential_first_and_last_parallel():
    plans = create_round_plans(depth=5, algorithm="parallel-sequential")
    modes = [p.mode for p in plans]
    assert modes == [RoundMode.PARALLEL, RoundMode.SEQUENTIAL, RoundMode.SEQUENTIAL, RoundMode.PARALLEL]


def test_parallel_sequential_two_rounds_has_no_final_vote():
    plans = create_round_plans(depth=3, algorithm="parallel-sequential")
    assert [p.mode for p in plans] == [RoundMode.PARALLEL, RoundMode.SEQUENTIAL]


def test_debate_rotates_and_uses_debate_context():
    plans = create_round_plans(depth=4, algorithm="debate")
    assert [p.rotate_offset for p in plans] == [0, 1, 2]
    assert all(p.context_mode == ContextMode.DEBATE for p in plans)


def test_delphi_is_anonymous_and_parallel():
    plans = create_round_plans(depth=3, algorithm="delphi")
    assert all(p.mode == RoundMode.PARALLEL for p in plans)
    assert all(p.context_mode == ContextMode.ANONYMOUS for p in plans)
    assert all(p.summary_mode == SummaryMode.ANONYMOUS for p in plans)


def test_six_hats_all_parallel():
    plans = create_round_plans(depth=4, algorithm="six-hats")
    assert all(p.mode == RoundMode.PARALLEL for p in plans)


@pytest.mark.parametrize("name", ["sequential", "parallel-sequential", "six-hats", "debate", "delphi"])
def test_plans_are_deterministic(name):
    assert create_round_plans(6, 2, 3, name) == create_round_plans(6, 2, 3, name)


def test_list_algorithms_names():
    names = {a.name for a in list_algorithms()}
    assert names == {"sequential", "parallel-sequential", "six-hats", "debate", "delphi"}
