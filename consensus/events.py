"""Typed events emitted by the engine, one per observable state change."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union

from consensus.models import (
    AbortReason,
    AgentMessage,
    ArbiterDecision,
    Blocker,
    ConsensusMetrics,
    ConsensusOutput,
    CostEntry,
    DecisionGate,
    ModeratorMessage,
    Phase,
    SessionState,
    StructuredState,
)


class EventType(str, Enum):
    SESSION_START = "session_start"
    PHASE_CHANGE = "phase_change"
    AGENT_SPEAKING = "agent_speaking"
    AGENT_THINKING = "agent_thinking"
    AGENT_MESSAGE_CHUNK = "agent_message_chunk"
    AGENT_MESSAGE_COMPLETE = "agent_message_complete"
    AGENT_SKIPPED = "agent_skipped"
    MODERATOR_SPEAKING = "moderator_speaking"
    MODERATOR_THINKING = "moderator_thinking"
    MODERATOR_MESSAGE_CHUNK = "moderator_message_chunk"
    MODERATOR_MESSAGE_COMPLETE = "moderator_message_complete"
    ROUND_COMPLETE = "round_complete"
    CONSENSUS_REACHED = "consensus_reached"
    SESSION_COMPLETE = "session_complete"
    ERROR = "error"
    INTERRUPT_SOFT = "interrupt_soft"
    INTERRUPT_HARD = "interrupt_hard"
    WRAPPING_UP = "wrapping_up"
    COST_UPDATE = "cost_update"
    BLOCKER_RAISED = "blocker_raised"
    BLOCKER_RESOLVED = "blocker_resolved"
    BLOCKER_ESCALATED = "blocker_escalated"
    ARBITER_INVOKED = "arbiter_invoked"
    ARBITER_DECISION = "arbiter_decision"
    ABORT = "abort"
    DECISION_GATE = "decision_gate"
    STATE_UPDATE = "state_update"
    METRICS_UPDATE = "metrics_update"


@dataclass
class SessionStart:
    type: ClassVar[EventType] = EventType.SESSION_START
    session: SessionState


@dataclass
class PhaseChange:
    type: ClassVar[EventType] = EventType.PHASE_CHANGE
    phase: Phase
    round: int


@dataclass
class AgentSpeaking:
    type: ClassVar[EventType] = EventType.AGENT_SPEAKING
    agent_id: str
    agent_name: str


@dataclass
class AgentThinking:
    type: ClassVar[EventType] = EventType.AGENT_THINKING
    agent_id: str
    agent_name: str
    elapsed_ms: int


@dataclass
class AgentMessageChunk:
    type: ClassVar[EventType] = EventType.AGENT_MESSAGE_CHUNK
    agent_id: str
    content: str


@dataclass
class AgentMessageComplete:
    type: ClassVar[EventType] = EventType.AGENT_MESSAGE_COMPLETE
    message: AgentMessage


@dataclass
class AgentSkipped:
    type: ClassVar[EventType] = EventType.AGENT_SKIPPED
    agent_id: str
    agent_name: str


@dataclass
class ModeratorSpeaking:
    type: ClassVar[EventType] = EventType.MODERATOR_SPEAKING


@dataclass
class ModeratorThinking:
    type: ClassVar[EventType] = EventType.MODERATOR_THINKING
    elapsed_ms: int


@dataclass
class ModeratorMessageChunk:
    type: ClassVar[EventType] = EventType.MODERATOR_MESSAGE_CHUNK
    content: str


@dataclass
class ModeratorMessageComplete:
    type: ClassVar[EventType] = EventType.MODERATOR_MESSAGE_COMPLETE
    message: ModeratorMessage


@dataclass
class RoundComplete:
    type: ClassVar[EventType] = EventType.ROUND_COMPLETE
    round: int
    summary: str


@dataclass
class ConsensusReached:
    type: ClassVar[EventType] = EventType.CONSENSUS_REACHED
    consensus: str


@dataclass
class SessionComplete:
    type: ClassVar[EventType] = EventType.SESSION_COMPLETE
    output: ConsensusOutput


@dataclass
class ErrorEvent:
    type: ClassVar[EventType] = EventType.ERROR
    error: str


@dataclass
class InterruptSoft:
    type: ClassVar[EventType] = EventType.INTERRUPT_SOFT
    reason: str


@dataclass
class InterruptHard:
    type: ClassVar[EventType] = EventType.INTERRUPT_HARD
    reason: str


@dataclass
class WrappingUp:
    type: ClassVar[EventType] = EventType.WRAPPING_UP


@dataclass
class CostUpdate:
    type: ClassVar[EventType] = EventType.COST_UPDATE
    cost: CostEntry
    total_cost: float


@dataclass
class BlockerRaised:
    type: ClassVar[EventType] = EventType.BLOCKER_RAISED
    blocker: Blocker


@dataclass
class BlockerResolved:
    type: ClassVar[EventType] = EventType.BLOCKER_RESOLVED
    blocker_id: str
    resolution: str


@dataclass
class BlockerEscalated:
    type: ClassVar[EventType] = EventType.BLOCKER_ESCALATED
    blocker: Blocker


@dataclass
class ArbiterInvoked:
    type: ClassVar[EventType] = EventType.ARBITER_INVOKED
    reason: str


@dataclass
class ArbiterDecided:
    type: ClassVar[EventType] = EventType.ARBITER_DECISION
    decision: ArbiterDecision


@dataclass
class Abort:
    type: ClassVar[EventType] = EventType.ABORT
    reason: AbortReason


@dataclass
class DecisionGateEvaluated:
    type: ClassVar[EventType] = EventType.DECISION_GATE
    gate: DecisionGate


@dataclass
class StateUpdate:
    type: ClassVar[EventType] = EventType.STATE_UPDATE
    state: StructuredState


@dataclass
class MetricsUpdate:
    type: ClassVar[EventType] = EventType.METRICS_UPDATE
    metrics: ConsensusMetrics


ConsensusEvent = Union[
    SessionStart, PhaseChange, AgentSpeaking, AgentThinking, AgentMessageChunk, AgentMessageComplete,
    AgentSkipped, ModeratorSpeaking, ModeratorThinking, ModeratorMessageChunk, ModeratorMessageComplete,
    RoundComplete, ConsensusReached, SessionComplete, ErrorEvent, InterruptSoft, InterruptHard, WrappingUp,
    CostUpdate, BlockerRaised, BlockerResolved, BlockerEscalated, ArbiterInvoked, ArbiterDecided, Abort,
    DecisionGateEvaluated, StateUpdate, MetricsUpdate,
]

# Handlers may be plain callables or coroutines
EventHandler = Callable[[ConsensusEvent], Union[Awaitable[None], None]]
