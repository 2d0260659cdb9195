"""Tests for consensus/arbiter.py."""

import json

from consensus.arbiter import Arbiter, extract_json_object, parse_decision
from consensus.models import (
    ArbiterConfig,
    ArbiterVerdict,
    Decision,
    DiscussionOption,
    Provider,
    StructuredState,
    TokenUsage,
    utc_now,
)
from tests.conftest import MockProvider, make_blocker


def _arbiter(provider: MockProvider) -> Arbiter:
    return Arbiter(ArbiterConfig(provider=Provider.OPENAI, model="model-arbiter"), provider)


def _options() -> list[DiscussionOption]:
    return [
        DiscussionOption(id="opt-a", proposal="Adopt Kafka", proposed_by="alice", supporters=["alice"]),
        DiscussionOption(id="opt-b", proposal="Adopt Postgres", proposed_by="bob", supporters=["bob", "carol"]),
    ]


def test_extract_json_object_from_prose():
    text = 'Sure. {"decision": "reject", "rationale": "Minor."} Hope that helps.'
    assert extract_json_object(text) == {"decision": "reject", "rationale": "Minor."}


def test_extract_json_object_skips_broken_braces():
    assert extract_json_object('{oops} then {"a": 1}') == {"a": 1}
    assert extract_json_object("no json here") is None


def test_parse_decision_json():
    reply = json.dumps({"decision": "MERGE", "rationale": "Both have merit.", "mergedResolution": "Snapshot nightly"})
    decision = parse_decision(reply, "b1")
    assert decision.blocker_id == "b1"
    assert decision.decision == ArbiterVerdict.MERGE
    assert decision.merged_resolution == "Snapshot nightly"


def test_parse_decision_unknown_verdict_defaults_to_merge():
    decision = parse_decision('{"decision": "maybe"}', "b1")
    assert decision.decision == ArbiterVerdict.MERGE
    assert decision.rationale == "Decision made by arbiter."


def test_parse_decision_keyword_fallback():
    assert parse_decision("This is a valid concern.", "b1").decision == ArbiterVerdict.ACCEPT
    assert parse_decision("It is not critical.", "b1").decision == ArbiterVerdict.REJECT
    assert parse_decision("Hmm.", "b1").decision == ArbiterVerdict.MERGE


async def test_resolve_blocker_records_usage():
    usage = TokenUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120)
    provider = MockProvider(responses=['{"decision": "accept", "rationale": "Real risk."}'], usage=usage)
    arbiter = _arbiter(provider)

    decision = await arbiter.resolve_blocker(make_blocker(), StructuredState(problem="p"), "alice vs bob")

    assert decision.decision == ArbiterVerdict.ACCEPT
    assert arbiter.last_usage == usage
    prompt = provider.calls[0][1]["content"]
    assert "Event store grows without bound" in prompt
    assert "DISPUTE CONTEXT:\nalice vs bob" in prompt


async def test_resolve_blocker_provider_error_merges_with_mitigation():
    arbiter = _arbiter(MockProvider(fail=True))
    decision = await arbiter.resolve_blocker(make_blocker(), StructuredState(problem="p"))
    assert decision.decision == ArbiterVerdict.MERGE
    assert decision.merged_resolution == "Snapshot and compact"
    assert arbiter.last_usage is None


async def test_resolve_deadlock_picks_named_winner():
    provider = MockProvider(responses=['{"winnerId": "opt-a", "rationale": "Simpler."}'])
    resolution = await _arbiter(provider).resolve_deadlock(_options(), StructuredState(problem="p"))
    assert resolution.winner_id == "opt-a"
    assert resolution.rationale == "Simpler."


async def test_resolve_deadlock_invalid_winner_uses_first_option():
    provider = MockProvider(responses=['{"winnerId": "nope"}'])
    resolution = await _arbiter(provider).resolve_deadlock(_options(), StructuredState(problem="p"))
    assert resolution.winner_id == "opt-a"


async def test_resolve_deadlock_failure_falls_back_to_most_supported():
    resolution = await _arbiter(MockProvider(fail=True)).resolve_deadlock(_options(), StructuredState(problem="p"))
    assert resolution.winner_id == "opt-b"
    assert "most support" in resolution.rationale


def test_needs_arbitration_on_critical_blockers():
    state = StructuredState(
        problem="p",
        consensus_level=90,
        decisions=[Decision(decision="d", rationale="r", made_at=utc_now())],
        blockers=[make_blocker(f"b{i}", condition=f"Critical blocker number {i}") for i in range(3)],
    )
    assert Arbiter.needs_arbitration(state)
    assert not Arbiter.needs_arbitration(state, max_open_blockers=4)


def test_needs_arbitration_on_low_consensus_without_decisions():
    assert Arbiter.needs_arbitration(StructuredState(problem="p", consensus_level=10))


def test_needs_arbitration_on_tied_options():
    options = [
        DiscussionOption(id="a", proposal="A", proposed_by="x", supporters=["x"]),
        DiscussionOption(id="b", proposal="B", proposed_by="y", supporters=["y"]),
    ]
    assert Arbiter.needs_arbitration(StructuredState(problem="p", consensus_level=50, options=options))

    options[1].supporters.append("z")
    assert not Arbiter.needs_arbitration(StructuredState(problem="p", consensus_level=50, options=options))
