"""Tests for consensus/protocol.py."""

from consensus.models import Phase, Stance
from consensus.protocol import DiscussionProtocol
from tests.conftest import make_agent_message


def test_advance_walks_through_phases():
    proto = DiscussionProtocol(total_rounds=3, agent_count=2)
    proto.start()
    assert proto.state() == (Phase.OPENING, 1)

    result = proto.advance()
    assert result.new_phase == Phase.DISCUSSION
    assert result.phase_changed

    # Switches one call after round total_rounds - 1 is reached
    assert proto.advance().new_phase == Phase.DISCUSSION
    result = proto.advance()
    assert result.new_phase == Phase.SYNTHESIS
    assert result.new_round == 3

    result = proto.advance()
    assert result.new_phase == Phase.CONSENSUS
    assert result.new_round == 4


def test_round_completion_counts_agent_messages():
    proto = DiscussionProtocol(total_rounds=3, agent_count=2)
    proto.start()
    proto.record_agent_message()
    assert not proto.is_round_complete()
    proto.record_agent_message()
    assert proto.is_round_complete()
    proto.advance()
    assert not proto.is_round_complete()


def test_phase_guidance_not_empty():
    proto = DiscussionProtocol(total_rounds=2, agent_count=2)
    proto.start()
    assert proto.phase_guidance()


def test_analyze_consensus_all_agree():
    messages = [make_agent_message("alice", Stance.AGREE), make_agent_message("bob", Stance.AGREE)]
    analysis = DiscussionProtocol.analyze_consensus(messages)
    assert analysis.agreement_level == 1.0
    assert analysis.dominant_stance == Stance.AGREE


def test_analyze_consensus_formula():
    messages = [
        make_agent_message("alice", Stance.AGREE),
        make_agent_message("bob", Stance.DISAGREE),
        make_agent_message("carol", Stance.PROPOSE),
        make_agent_message("dave", Stance.CHALLENGE),
    ]
    # (1 - 2 * 0.5 + 4) / 8
    assert DiscussionProtocol.analyze_consensus(messages).agreement_level == 0.5


def test_analyze_consensus_empty():
    analysis = DiscussionProtocol.analyze_consensus([])
    assert analysis.agreement_level == 0.0
    assert analysis.dominant_stance == Stance.PROPOSE


def test_analyze_consensus_key_points():
    messages = [
        make_agent_message("alice", Stance.AGREE, key_points=["Use snapshots", "Keep it simple"]),
        make_agent_message("bob", Stance.AGREE, key_points=["use snapshots "]),
        make_agent_message("carol", Stance.CHALLENGE, key_points=["Storage cost"]),
    ]
    analysis = DiscussionProtocol.analyze_consensus(messages)
    assert analysis.key_agreements == ["use snapshots"]
    assert analysis.key_disagreements == ["Storage cost"]


def test_speaking_order_round_robin():
    assert DiscussionProtocol.determine_speaking_order(["a", "b", "c"], []) == ["a", "b", "c"]


def test_speaking_order_unknown_strategy_falls_back():
    assert DiscussionProtocol.determine_speaking_order(["a", "b"], [], "loudest") == ["a", "b"]


def test_speaking_order_random_is_permutation():
    order = DiscussionProtocol.determine_speaking_order(["a", "b", "c"], [], "random")
    assert sorted(order) == ["a", "b", "c"]


def test_speaking_order_engagement_least_referenced_first():
    messages = [
        make_agent_message("alice", content="I agree with bob and bob again"),
        make_agent_message("carol", content="bob has a point"),
    ]
    order = DiscussionProtocol.determine_speaking_order(["bob", "alice", "carol"], messages, "engagement")
    assert order[-1] == "bob"


def test_validate_message_flags_problems():
    msg = make_agent_message("alice", Stance.PASS, content="short")
    result = DiscussionProtocol.validate_message(msg, Phase.CONSENSUS, [])
    assert not result.valid
    assert any("too short" in i for i in result.issues)
    assert any("key points" in i for i in result.issues)
    assert any("Cannot PASS" in i for i in result.issues)


def test_validate_message_accepts_engaged_reply():
    previous = [make_agent_message("bob")]
    msg = make_agent_message(
        "alice",
        content="Building on what Bob said, I think snapshots every thousand events keep replay fast enough.",
        key_points=["Snapshots"],
    )
    result = DiscussionProtocol.validate_message(msg, Phase.DISCUSSION, previous)
    assert result.valid
    assert result.issues == []
