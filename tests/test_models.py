"""Tests for consensus/models.py dataclasses."""

from consensus.models import (
    AgentMessage,
    Blocker,
    BlockerStatus,
    ConsensusMetrics,
    DiscussionLimits,
    MessageKind,
    ModeratorMessage,
    Phase,
    SessionState,
    Stance,
    StructuredState,
    UserInterrupt,
    utc_now,
)
from tests.conftest import make_agent_message, make_discussion_config


def test_enum_values_match_wire_format():
    assert Phase.DISCUSSION.value == "DISCUSSION"
    assert Stance.CHALLENGE.value == "CHALLENGE"
    assert BlockerStatus.ESCALATED.value == "escalated"


def test_message_kinds():
    assert AgentMessage.kind == MessageKind.AGENT
    assert ModeratorMessage.kind == MessageKind.MODERATOR


def test_agent_message_defaults():
    msg = make_agent_message()
    assert msg.key_points == []
    assert msg.blockers is None
    assert msg.proposal is None
    assert msg.token_usage is None


def test_blocker_defaults_to_open():
    blocker = Blocker(
        id="b1",
        condition="Queue backs up",
        impact="Latency",
        detection="Lag metric",
        mitigation="Scale consumers",
        severity=3,
        confidence=2,
        raised_by="bob",
    )
    assert blocker.status == BlockerStatus.OPEN
    assert blocker.resolution is None


def test_limits_default_to_unlimited():
    limits = DiscussionLimits()
    assert limits.max_cost_usd is None
    assert limits.max_duration_ms is None
    assert not limits.require_human_decision


def test_structured_state_lists_are_independent():
    a = StructuredState(problem="a")
    b = StructuredState(problem="b")
    a.open_questions.append("why?")
    assert b.open_questions == []


def test_session_state_defaults():
    now = utc_now()
    session = SessionState(id="s", created_at=now, updated_at=now, config=make_discussion_config())
    assert session.current_phase == Phase.OPENING
    assert session.messages == []
    assert not session.is_complete
    assert session.abort_reason is None
    assert session.arbiter_decisions == []


def test_abort_reason_type_tags():
    assert UserInterrupt(interrupt_type="soft").type == "user_interrupt"


def test_metrics_defaults():
    metrics = ConsensusMetrics()
    assert metrics.agreement_level == 0.0
    assert metrics.convergence_round is None
