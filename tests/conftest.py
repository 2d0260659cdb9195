"""Shared pytest fixtures."""

import asyncio
from pathlib import Path

import pytest

from config.config_loader import AgentEntry, AppConfig, DefaultsConfig, ModelConfig, ModeratorEntry
from consensus.cost_tracker import CostTracker
from consensus.models import (
    AgentConfig,
    AgentMessage,
    AgentSummary,
    ArbiterConfig,
    Blocker,
    BlockerStatus,
    ConsensusMetrics,
    ConsensusOutput,
    ConsensusSummary,
    DiscussionConfig,
    DiscussionLimits,
    ModeratorConfig,
    ModeratorMessage,
    ModeratorMessageType,
    Personality,
    Phase,
    Provider,
    SessionState,
    Stance,
    StructuredState,
    TokenUsage,
    utc_now,
)
from consensus.providers.base import AIProvider, ChatMessage, ChatResult, ProviderError

AGREE_REPLY = "[STANCE: AGREE]\nI agree with the plan.\n[KEY_POINTS: Plan is sound | Ship it]"


class MockProvider(AIProvider):
    """Test double AIProvider with scripted replies.

    Replies are returned in order; the last one repeats once the script runs
    out. ``fail`` makes every chat call raise ProviderError, ``delay`` makes
    each call sleep first.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        responses: list[str] | None = None,
        usage: TokenUsage | None = None,
        fail: bool = False,
        delay: float = 0.0,
        available: bool = True,
    ) -> None:
        self._name = provider_name
        self.responses = list(responses or [AGREE_REPLY])
        self.usage = usage
        self.fail = fail
        self.delay = delay
        self.available = available
        self.calls: list[list[ChatMessage]] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def chat(
        self,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> ChatResult:
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError(self._name, "mock failure")
        content = self.responses[min(len(self.calls), len(self.responses)) - 1]
        return ChatResult(content=content, usage=self.usage)

    async def is_available(self) -> bool:
        return self.available


def make_agent_config(agent_id: str, name: str | None = None) -> AgentConfig:
    return AgentConfig(
        id=agent_id,
        name=name or agent_id.title(),
        provider=Provider.OPENAI,
        model=f"model-{agent_id}",
        personality=Personality(name="Tester", description="Tests things", traits=["careful"]),
    )


def make_discussion_config(
    agent_ids: tuple[str, ...] = ("alice", "bob"),
    depth: int = 3,
    limits: DiscussionLimits | None = None,
    algorithm: str = "sequential",
    arbiter: bool = False,
) -> DiscussionConfig:
    return DiscussionConfig(
        topic="Should we adopt event sourcing?",
        depth=depth,
        agents=[make_agent_config(a) for a in agent_ids],
        moderator=ModeratorConfig(provider=Provider.OPENAI, model="model-moderator"),
        arbiter=ArbiterConfig(provider=Provider.OPENAI, model="model-arbiter") if arbiter else None,
        limits=limits or DiscussionLimits(),
        algorithm=algorithm,
    )


def provider_factory_for(providers: dict[str, MockProvider]):
    """Factory that hands out ``providers[model]`` (a default mock for unknown models)."""

    def factory(provider, model, api_key_env=None, base_url=None, timeout_sec=180):
        return providers.setdefault(model, MockProvider(str(model)))

    return factory


def make_blocker(blocker_id: str = "b1", severity: int = 4, confidence: int = 4, **kwargs) -> Blocker:
    fields = {
        "condition": "Event store grows without bound",
        "impact": "Disk fills up",
        "detection": "Disk usage alerts",
        "mitigation": "Snapshot and compact",
        "raised_by": "alice",
    }
    fields.update(kwargs)
    return Blocker(id=blocker_id, severity=severity, confidence=confidence, **fields)


def make_agent_message(
    agent_id: str = "alice",
    stance: Stance = Stance.AGREE,
    phase: Phase = Phase.DISCUSSION,
    round_num: int = 1,
    content: str = "I agree.",
    **kwargs,
) -> AgentMessage:
    return AgentMessage(
        id=f"m-{agent_id}-{round_num}-{stance.value}",
        agent_id=agent_id,
        agent_name=agent_id.title(),
        timestamp=utc_now(),
        phase=phase,
        round=round_num,
        stance=stance,
        content=content,
        **kwargs,
    )


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def discussion_config() -> DiscussionConfig:
    return make_discussion_config()


@pytest.fixture
def sample_app_config(tmp_path: Path) -> AppConfig:
    personality = Personality(name="The Skeptic", description="Questions assumptions", traits=["critical"])
    return AppConfig(
        defaults=DefaultsConfig(depth=3, output_dir=tmp_path / "output", default_agents=["skeptic", "builder"]),
        models={
            "claude": ModelConfig(
                name="claude",
                provider=Provider.ANTHROPIC,
                model="claude-sonnet-4-20250514",
                api_key_env="ANTHROPIC_API_KEY",
                timeout_sec=60,
                max_tokens=1024,
            ),
            "local": ModelConfig(
                name="local",
                provider=Provider.OLLAMA,
                model="llama3.1",
                api_key_env=None,
                timeout_sec=300,
                max_tokens=1024,
                base_url="http://localhost:11434/v1",
            ),
        },
        personalities={"skeptic": personality},
        agents={
            "skeptic": AgentEntry(id="skeptic", model="claude", personality="skeptic"),
            "builder": AgentEntry(id="builder", model="local", personality="skeptic", name="Builder"),
        },
        moderator=ModeratorEntry(model="claude"),
        available_models={"claude", "local"},
    )


@pytest.fixture
def sample_output() -> ConsensusOutput:
    now = utc_now()
    messages = [
        ModeratorMessage(
            id="m0", timestamp=now, phase=Phase.OPENING, round=0,
            type=ModeratorMessageType.INTRODUCTION, content="Welcome to the panel.",
        ),
        make_agent_message(
            "alice", Stance.CHALLENGE, phase=Phase.OPENING, content="Storage will explode.",
            key_points=["Storage risk"], blockers=[make_blocker()],
        ),
        make_agent_message("bob", Stance.AGREE, phase=Phase.DISCUSSION, round_num=1, key_points=["Snapshots"]),
        ModeratorMessage(
            id="m1", timestamp=now, phase=Phase.CONSENSUS, round=2,
            type=ModeratorMessageType.CONCLUSION, content="## Outcome\nAdopt it with snapshots.",
        ),
    ]
    tracker = CostTracker()
    tracker.record("alice", "Alice", "openai", "gpt-4o", TokenUsage(100, 50, 150), Phase.OPENING, 1)
    state = StructuredState(
        problem="Should we adopt event sourcing?",
        blockers=[
            make_blocker("b1"),
            make_blocker("b2", condition="Replay is slow", status=BlockerStatus.ADDRESSED, resolution="Snapshots"),
            make_blocker("b3", condition="Schema drift", status=BlockerStatus.ESCALATED),
        ],
    )
    session = SessionState(
        id="abcdef123456",
        created_at=now,
        updated_at=now,
        config=make_discussion_config(depth=2),
        messages=messages,
        is_complete=True,
        consensus_reached=True,
        final_consensus="## Outcome\nAdopt it with snapshots.",
        structured_state=state,
        cost_entries=tracker.entries(),
        cost_summary=tracker.summary(),
        metrics=ConsensusMetrics(agreement_level=0.75, blocker_count=1, resolved_blocker_count=1, convergence_round=2),
    )
    summary = ConsensusSummary(
        topic="Should we adopt event sourcing?",
        participant_count=2,
        round_count=2,
        consensus_reached=True,
        final_consensus=session.final_consensus,
        key_agreements=["snapshots"],
        remaining_disagreements=["Storage risk"],
        agent_summaries=[
            AgentSummary(agent_name="Alice", personality="Tester", key_contributions=["Storage risk"]),
            AgentSummary(agent_name="Bob", personality="Tester", key_contributions=[]),
        ],
    )
    return ConsensusOutput(session=session, summary=summary, transcript=messages)

