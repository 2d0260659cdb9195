"""Dataclasses and enums for the consensus discussion. No orchestration logic."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    OPENING = "OPENING"
    DISCUSSION = "DISCUSSION"
    SYNTHESIS = "SYNTHESIS"
    CONSENSUS = "CONSENSUS"


class Stance(str, Enum):
    PROPOSE = "PROPOSE"
    AGREE = "AGREE"
    DISAGREE = "DISAGREE"
    REFINE = "REFINE"
    CHALLENGE = "CHALLENGE"
    PASS = "PASS"


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    OPENROUTER = "openrouter"


class BlockerStatus(str, Enum):
    OPEN = "open"
    ADDRESSED = "addressed"
    DISPUTED = "disputed"
    ESCALATED = "escalated"


class MessageKind(str, Enum):
    AGENT = "agent"
    MODERATOR = "moderator"


class ModeratorMessageType(str, Enum):
    INTRODUCTION = "introduction"
    SUMMARY = "summary"
    TRANSITION = "transition"
    CONCLUSION = "conclusion"


class GateCondition(str, Enum):
    GO = "go"
    NO_GO = "no-go"
    EXPAND = "expand"
    NEEDS_HUMAN = "needs-human"


class ArbiterVerdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    MERGE = "merge"


# --- Personas and configuration ---


@dataclass
class Personality:
    name: str
    description: str = ""
    traits: list[str] = field(default_factory=list)
    system_prompt_addition: str = ""
    tone: str = "neutral"


@dataclass
class AgentConfig:
    id: str
    name: str
    provider: Provider
    model: str
    personality: Personality
    api_key_env: str | None = None
    base_url: str | None = None
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_sec: int = 180


@dataclass
class ModeratorConfig:
    provider: Provider
    model: str
    api_key_env: str | None = None
    base_url: str | None = None
    temperature: float = 0.5
    timeout_sec: int = 180


@dataclass
class ArbiterConfig:
    provider: Provider
    model: str
    api_key_env: str | None = None
    base_url: str | None = None
    timeout_sec: int = 120


@dataclass
class DiscussionLimits:
    max_cost_usd: float | None = None
    max_duration_ms: int | None = None
    max_tokens: int | None = None
    max_blockers: int | None = None
    max_consecutive_disagreements: int | None = None
    require_human_decision: bool = False


@dataclass
class DiscussionConfig:
    topic: str
    depth: int                      # total rounds, the last one reserved for synthesis
    agents: list[AgentConfig]
    moderator: ModeratorConfig
    arbiter: ArbiterConfig | None = None
    limits: DiscussionLimits | None = None
    algorithm: str = "sequential"
    speaking_order: str = "round-robin"
    continue_from_session: str | None = None


# --- Structured state ---


@dataclass
class Blocker:
    id: str
    condition: str
    impact: str
    detection: str
    mitigation: str
    severity: int                   # 1=minor, 5=critical
    confidence: int                 # 1=speculation, 5=certain
    raised_by: str
    status: BlockerStatus = BlockerStatus.OPEN
    resolution: str | None = None


@dataclass
class DiscussionOption:
    id: str
    proposal: str
    proposed_by: str
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    supporters: list[str] = field(default_factory=list)
    opponents: list[str] = field(default_factory=list)


@dataclass
class Decision:
    decision: str
    rationale: str
    made_at: datetime
    supporters: list[str] = field(default_factory=list)


@dataclass
class StructuredState:
    problem: str
    constraints: list[str] = field(default_factory=list)
    options: list[DiscussionOption] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    blockers: list[Blocker] = field(default_factory=list)
    consensus_level: float = 0.0    # 0-100


# --- Transcript ---


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class AgentMessage:
    kind: ClassVar[MessageKind] = MessageKind.AGENT

    id: str
    agent_id: str
    agent_name: str
    timestamp: datetime
    phase: Phase
    round: int
    stance: Stance
    content: str
    key_points: list[str] = field(default_factory=list)
    referenced_message_ids: list[str] = field(default_factory=list)
    blockers: list[Blocker] | None = None
    proposal: DiscussionOption | None = None
    token_usage: TokenUsage | None = None


@dataclass
class ModeratorMessage:
    kind: ClassVar[MessageKind] = MessageKind.MODERATOR

    id: str
    timestamp: datetime
    phase: Phase
    round: int
    type: ModeratorMessageType
    content: str
    identified_agreements: list[str] | None = None
    identified_disagreements: list[str] | None = None
    token_usage: TokenUsage | None = None


Message = Union[AgentMessage, ModeratorMessage]


# --- Costs ---


@dataclass
class CostEntry:
    agent_id: str
    agent_name: str
    provider: str
    model: str
    timestamp: datetime
    tokens: TokenUsage
    estimated_cost: float           # USD
    phase: Phase
    round: int


@dataclass
class CostSummary:
    total_tokens: TokenUsage
    total_cost: float
    cost_by_agent: dict[str, float]
    cost_by_phase: dict[str, float]
    cost_by_round: dict[int, float]
    average_cost_per_message: float


# --- Abort reasons (tagged union) ---


@dataclass
class CostLimit:
    type: ClassVar[str] = "cost_limit"
    spent: float
    limit: float


@dataclass
class TimeLimit:
    type: ClassVar[str] = "time_limit"
    elapsed_ms: int
    limit_ms: int


@dataclass
class TokenLimit:
    type: ClassVar[str] = "token_limit"
    used: int
    limit: int


@dataclass
class BlockerLimit:
    type: ClassVar[str] = "blocker_limit"
    count: int
    limit: int


@dataclass
class Deadlock:
    type: ClassVar[str] = "deadlock"
    description: str


@dataclass
class NeedsHuman:
    type: ClassVar[str] = "needs_human"
    blockers: list[Blocker]


@dataclass
class UserInterrupt:
    type: ClassVar[str] = "user_interrupt"
    interrupt_type: str             # "soft" or "hard"


AbortReason = Union[CostLimit, TimeLimit, TokenLimit, BlockerLimit, Deadlock, NeedsHuman, UserInterrupt]


# --- Metrics, gates, arbitration ---


@dataclass
class ConsensusMetrics:
    agreement_level: float = 0.0    # 0-1
    key_agreements: list[str] = field(default_factory=list)
    key_disagreements: list[str] = field(default_factory=list)
    blocker_count: int = 0
    resolved_blocker_count: int = 0
    average_confidence: float = 0.0
    convergence_round: int | None = None


@dataclass
class GateMetrics:
    agreement_level: float          # percentage
    cost_spent: float
    cost_limit: float
    blocker_count: int
    time_spent_ms: int


@dataclass
class DecisionGate:
    name: str
    condition: GateCondition
    metrics: GateMetrics
    recommendation: str


@dataclass
class ArbiterDecision:
    blocker_id: str
    decision: ArbiterVerdict
    rationale: str
    timestamp: datetime
    merged_resolution: str | None = None


# --- Session ---


@dataclass
class SessionState:
    id: str
    created_at: datetime
    updated_at: datetime
    config: DiscussionConfig
    current_phase: Phase = Phase.OPENING
    current_round: int = 0
    messages: list[Message] = field(default_factory=list)
    is_complete: bool = False
    consensus_reached: bool = False
    final_consensus: str | None = None
    structured_state: StructuredState | None = None
    cost_entries: list[CostEntry] = field(default_factory=list)
    cost_summary: CostSummary | None = None
    metrics: ConsensusMetrics | None = None
    abort_reason: AbortReason | None = None
    arbiter_decisions: list[ArbiterDecision] = field(default_factory=list)


@dataclass
class AgentSummary:
    agent_name: str
    personality: str
    key_contributions: list[str]


@dataclass
class ConsensusSummary:
    topic: str
    participant_count: int
    round_count: int
    consensus_reached: bool
    final_consensus: str
    key_agreements: list[str]
    remaining_disagreements: list[str]
    agent_summaries: list[AgentSummary]


@dataclass
class ConsensusOutput:
    session: SessionState
    summary: ConsensusSummary
    transcript: list[Message]
