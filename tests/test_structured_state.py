"""Tests for consensus/structured_state.py."""

from consensus.models import BlockerStatus, DiscussionOption, Stance
from consensus.structured_state import StructuredStateManager
from tests.conftest import make_agent_message, make_blocker


def _option(text: str = "Use Postgres", by: str = "alice") -> DiscussionOption:
    return DiscussionOption(id="ignored", proposal=text, proposed_by=by, pros=["mature", "cheap"])


def test_add_option_assigns_fresh_id():
    mgr = StructuredStateManager("problem")
    added = mgr.add_option(_option())
    assert added.id != "ignored"
    assert mgr.find_option(added.id) is added


def test_record_vote_moves_agent_between_sides():
    mgr = StructuredStateManager("problem")
    opt = mgr.add_option(_option())

    mgr.record_vote(opt.id, "alice", True)
    mgr.record_vote(opt.id, "bob", False)
    assert opt.supporters == ["alice"]
    assert opt.opponents == ["bob"]
    assert mgr.state.consensus_level == 50.0

    mgr.record_vote(opt.id, "bob", True)
    assert opt.supporters == ["alice", "bob"]
    assert opt.opponents == []
    assert mgr.state.consensus_level == 100.0



def test_record_vote_is_idempotent():
    mgr = StructuredStateManager("problem")
    opt = mgr.add_option(_option())

    for _ in range(3):
        mgr.record_vote(opt.id, "alice", True)
        mgr.record_vote(opt.id, "bob", False)
    assert opt.supporters == ["alice"]
    assert opt.opponents == ["bob"]
    assert mgr.state.consensus_level == 50.0

    mgr.record_vote(opt.id, "alice", False)
    mgr.record_vote(opt.id, "alice", False)
    assert opt.supporters == []
    assert opt.opponents == ["bob", "alice"]
    assert mgr.state.consensus_level == 0.0


def test_vote_for_unknown_option_is_ignored():
    mgr = StructuredStateManager("problem")
    mgr.record_vote("nope", "alice", True)
    assert mgr.state.consensus_level == 0.0


def test_leading_option_prefers_earliest_on_tie():
    mgr = StructuredStateManager("problem")
    first = mgr.add_option(_option("A"))
    second = mgr.add_option(_option("B"))
    mgr.record_vote(first.id, "alice", True)
    mgr.record_vote(second.id, "bob", True)
    assert mgr.leading_option() is first


def test_add_blocker_forces_open_and_clamps():
    mgr = StructuredStateManager("problem")
    added = mgr.add_blocker(make_blocker(severity=9, confidence=0, status=BlockerStatus.ADDRESSED))
    assert added.status == BlockerStatus.OPEN
    assert added.severity == 5
    assert added.confidence == 1


def test_resolve_and_escalate_blocker():
    mgr = StructuredStateManager("problem")
    a = mgr.add_blocker(make_blocker(condition="First long blocker condition"))
    b = mgr.add_blocker(make_blocker(condition="Second long blocker condition"))

    mgr.resolve_blocker(a.id, "Handled by snapshots")
    mgr.escalate_blocker(b.id)

    assert a.status == BlockerStatus.ADDRESSED
    assert a.resolution == "Handled by snapshots"
    assert b.status == BlockerStatus.ESCALATED
    assert mgr.open_blockers() == []


def test_critical_blockers_need_high_severity_and_confidence():
    mgr = StructuredStateManager("problem")
    mgr.add_blocker(make_blocker(severity=5, confidence=3, condition="Severe but uncertain issue"))
    critical = mgr.add_blocker(make_blocker(severity=4, confidence=4, condition="Severe and certain issue"))
    assert mgr.critical_blockers() == [critical]


def test_process_message_dedups_blockers_case_insensitively():
    mgr = StructuredStateManager("problem")
    first = make_agent_message("alice", Stance.CHALLENGE, blockers=[make_blocker(condition="Event store grows")])
    second = make_agent_message("bob", Stance.CHALLENGE, blockers=[make_blocker(condition="EVENT STORE GROWS")])

    assert len(mgr.process_agent_message(first)) == 1
    assert mgr.process_agent_message(second) == []
    assert len(mgr.state.blockers) == 1


def test_process_message_votes_for_latest_option():
    mgr = StructuredStateManager("problem")
    mgr.process_agent_message(make_agent_message("alice", Stance.PROPOSE, proposal=_option("Option A")))
    mgr.process_agent_message(make_agent_message("bob", Stance.PROPOSE, proposal=_option("Option B", "bob")))
    mgr.process_agent_message(make_agent_message("carol", Stance.AGREE))

    first, latest = mgr.state.options
    assert first.supporters == []
    assert latest.supporters == ["carol"]


def test_process_message_disagree_and_challenge_oppose():
    mgr = StructuredStateManager("problem")
    mgr.process_agent_message(make_agent_message("alice", Stance.PROPOSE, proposal=_option()))
    mgr.process_agent_message(make_agent_message("bob", Stance.DISAGREE))
    mgr.process_agent_message(make_agent_message("carol", Stance.CHALLENGE))
    assert mgr.state.options[0].opponents == ["bob", "carol"]


def test_duplicate_proposal_not_added_twice():
    mgr = StructuredStateManager("problem")
    mgr.process_agent_message(make_agent_message("alice", Stance.PROPOSE, proposal=_option("Use Kafka")))
    mgr.process_agent_message(make_agent_message("bob", Stance.PROPOSE, proposal=_option("use kafka", "bob")))
    assert len(mgr.state.options) == 1


def test_calculate_metrics():
    mgr = StructuredStateManager("problem")
    opt = mgr.add_option(_option())
    mgr.record_vote(opt.id, "alice", True)
    mgr.record_vote(opt.id, "bob", True)
    blocker = mgr.add_blocker(make_blocker(confidence=2))
    mgr.resolve_blocker(blocker.id, "done")
    mgr.add_blocker(make_blocker(confidence=4, condition="Another long condition"))

    metrics = mgr.calculate_metrics(total_agents=2)
    assert metrics.agreement_level == 1.0
    assert metrics.key_agreements == ["mature", "cheap"]
    assert metrics.blocker_count == 1
    assert metrics.resolved_blocker_count == 1
    assert metrics.average_confidence == 3.0
    assert metrics.convergence_round == 0


def test_metrics_default_confidence_without_blockers():
    metrics = StructuredStateManager("problem").calculate_metrics(total_agents=3)
    assert metrics.average_confidence == 5.0
    assert metrics.convergence_round is None


def test_add_decision_and_context_string():
    mgr = StructuredStateManager("Pick a database", constraints=["Must be open source"])
    mgr.add_option(_option())
    mgr.add_open_question("What about backups?")
    mgr.add_decision("Use Postgres", "Mature and cheap", ["alice"])

    text = mgr.to_context_string()
    assert "PROBLEM: Pick a database" in text
    assert "Must be open source" in text
    assert "Use Postgres" in text
    assert "What about backups?" in text
    assert "DECISIONS MADE:" in text
    assert text.endswith("=== END STATE ===")


def test_from_state_is_independent_copy():
    mgr = StructuredStateManager("problem")
    mgr.add_blocker(make_blocker())
    restored = StructuredStateManager.from_state(mgr.state)
    restored.resolve_blocker(restored.state.blockers[0].id, "fixed")
    assert mgr.state.blockers[0].status == BlockerStatus.OPEN


def test_from_messages_replays_transcript():
    messages = [
        make_agent_message("alice", Stance.PROPOSE, proposal=_option()),
        make_agent_message("bob", Stance.AGREE, blockers=[make_blocker()]),
    ]
    mgr = StructuredStateManager.from_messages("problem", messages)
    assert len(mgr.state.options) == 1
    assert mgr.state.options[0].supporters == ["bob"]
    assert len(mgr.state.blockers) == 1
