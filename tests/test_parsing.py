"""Tests for consensus/parsing.py."""

from consensus.models import BlockerStatus, Stance
from consensus.parsing import clamp_score, new_id, parse_turn


def test_full_turn_is_parsed():
    raw = (
        "[STANCE: CHALLENGE]\n"
        "I see risks here.\n"
        '[BLOCKER: condition="API rate limits exceeded during peak" | impact="Service degradation" | '
        'detection="Monitor 429 responses" | mitigation="Exponential backoff" | severity=4 | confidence=3]\n'
        "[KEY_POINTS: Rate limiting is critical | Need fallback]"
    )
    turn = parse_turn(raw, "alice")

    assert turn.stance == Stance.CHALLENGE
    assert turn.content == "I see risks here."
    assert turn.key_points == ["Rate limiting is critical", "Need fallback"]
    assert len(turn.blockers) == 1
    blocker = turn.blockers[0]
    assert blocker.condition == "API rate limits exceeded during peak"
    assert blocker.severity == 4
    assert blocker.confidence == 3
    assert blocker.raised_by == "alice"
    assert blocker.status == BlockerStatus.OPEN


def test_missing_markers_use_defaults():
    turn = parse_turn("Just some free text.", "bob")
    assert turn.stance == Stance.PROPOSE
    assert turn.blockers == []
    assert turn.key_points == []
    assert turn.proposal is None
    assert turn.content == "Just some free text."


def test_stance_is_case_insensitive():
    assert parse_turn("[stance: agree] ok", "a").stance == Stance.AGREE


def test_short_blocker_condition_is_ignored():
    raw = '[BLOCKER: condition="too short" | impact="x" | detection="y" | mitigation="z" | severity=5 | confidence=5]'
    turn = parse_turn(raw, "a")
    assert turn.blockers == []
    assert "BLOCKER" not in turn.content


def test_scores_are_clamped():
    raw = (
        '[BLOCKER: condition="Database migration fails halfway" | impact="x" | detection="y" | '
        'mitigation="z" | severity=9 | confidence=0]'
    )
    blocker = parse_turn(raw, "a").blockers[0]
    assert blocker.severity == 5
    assert blocker.confidence == 1


def test_proposal_marker_becomes_option():
    turn = parse_turn("[STANCE: PROPOSE]\n[PROPOSAL: Use Kafka for the event log]\nDetails follow.", "carol")
    assert turn.proposal is not None
    assert turn.proposal.proposal == "Use Kafka for the event log"
    assert turn.proposal.proposed_by == "carol"
    assert "PROPOSAL" not in turn.content


def test_clamp_score_bounds():
    assert clamp_score(0) == 1
    assert clamp_score(3) == 3
    assert clamp_score(42) == 5


def test_new_id_is_short_and_unique():
    ids = {new_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(len(i) == 8 for i in ids)
