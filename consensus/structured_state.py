"""Compact world-model of a discussion: options, votes, blockers, decisions.

The structured state is what gets handed to LLM prompts instead of the full
transcript, and what the limiter, decision gate and arbiter read.
"""

import copy
import logging
from dataclasses import replace

from consensus.models import (
    AgentMessage,
    Blocker,
    BlockerStatus,
    ConsensusMetrics,
    Decision,
    DiscussionOption,
    Message,
    Stance,
    StructuredState,
    utc_now,
)
from consensus.parsing import clamp_score, new_id

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (BlockerStatus.OPEN, BlockerStatus.DISPUTED)


class StructuredStateManager:
    """Owns and mutates one session's StructuredState."""

    def __init__(self, problem: str, constraints: list[str] | None = None) -> None:
        self._state = StructuredState(problem=problem, constraints=list(constraints or []))

    @classmethod
    def from_state(cls, state: StructuredState) -> "StructuredStateManager":
        """Rehydrate from a persisted snapshot without replaying the transcript."""
        manager = cls(state.problem)
        manager._state = copy.deepcopy(state)
        return manager

    @classmethod
    def from_messages(cls, problem: str, messages: list[Message]) -> "StructuredStateManager":
        """Rebuild state by replaying every agent message in order."""
        manager = cls(problem)
        for msg in messages:
            if isinstance(msg, AgentMessage):
                manager.process_agent_message(msg)
        return manager

    @property
    def state(self) -> StructuredState:
        return self._state

    def snapshot(self) -> StructuredState:
        """Return a deep copy safe to persist or hand to other components."""
        return copy.deepcopy(self._state)

    # --- Options and votes ---

    def add_option(self, option: DiscussionOption) -> DiscussionOption:
        added = replace(
            option,
            id=new_id(),
            pros=list(option.pros),
            cons=list(option.cons),
            risks=list(option.risks),
            supporters=list(option.supporters),
            opponents=list(option.opponents),
        )
        self._state.options.append(added)
        logger.debug("Added option: %s", added.proposal[:50])
        return added

    def update_option(self, option_id: str, **updates) -> None:
        for index, option in enumerate(self._state.options):
            if option.id == option_id:
                self._state.options[index] = replace(option, **updates)
                return

    def find_option(self, option_id: str) -> DiscussionOption | None:
        return next((o for o in self._state.options if o.id == option_id), None)

    def record_vote(self, option_id: str, agent_id: str, support: bool) -> None:
        """Move an agent into the supporters or opponents of an option."""
        option = self.find_option(option_id)
        if option is None:
            return

        if support:
            if agent_id not in option.supporters:
                option.supporters.append(agent_id)
            option.opponents = [a for a in option.opponents if a != agent_id]
        else:
            if agent_id not in option.opponents:
                option.opponents.append(agent_id)
            option.supporters = [a for a in option.supporters if a != agent_id]

        self._update_consensus_level()

    def _update_consensus_level(self) -> None:
        if not self._state.options:
            self._state.consensus_level = 0.0
            return

        max_support = max(len(o.supporters) for o in self._state.options)
        voters = max(len(o.supporters) + len(o.opponents) for o in self._state.options)
        level = (max_support / voters) * 100 if voters > 0 else 0.0
        self._state.consensus_level = min(100.0, max(0.0, level))

    def leading_option(self) -> DiscussionOption | None:
        """The option with most supporters; the earliest one wins ties."""
        leading: DiscussionOption | None = None
        for option in self._state.options:
            if leading is None or len(option.supporters) > len(leading.supporters):
                leading = option
        return leading

    # --- Blockers ---

    def add_blocker(self, blocker: Blocker) -> Blocker:
        added = replace(
            blocker,
            id=new_id(),
            status=BlockerStatus.OPEN,
            severity=clamp_score(blocker.severity),
            confidence=clamp_score(blocker.confidence),
        )
        self._state.blockers.append(added)
        logger.info(
            "Blocker raised: %s (severity %d, confidence %d)",
            added.condition[:50], added.severity, added.confidence,
        )
        return added

    def find_blocker(self, blocker_id: str) -> Blocker | None:
        return next((b for b in self._state.blockers if b.id == blocker_id), None)

    def resolve_blocker(self, blocker_id: str, resolution: str) -> None:
        blocker = self.find_blocker(blocker_id)
        if blocker is not None:
            blocker.status = BlockerStatus.ADDRESSED
            blocker.resolution = resolution
            logger.info("Blocker resolved: %s", blocker_id)

    def escalate_blocker(self, blocker_id: str) -> None:
        blocker = self.find_blocker(blocker_id)
        if blocker is not None:
            blocker.status = BlockerStatus.ESCALATED
            logger.warning("Blocker escalated: %s", blocker_id)

    def open_blockers(self) -> list[Blocker]:
        return [b for b in self._state.blockers if b.status in _OPEN_STATUSES]

    def critical_blockers(self) -> list[Blocker]:
        return [b for b in self.open_blockers() if b.severity >= 4 and b.confidence >= 4]

    # --- Questions and decisions ---

    def add_open_question(self, question: str) -> None:
        if question not in self._state.open_questions:
            self._state.open_questions.append(question)

    def resolve_question(self, question: str) -> None:
        self._state.open_questions = [q for q in self._state.open_questions if q != question]

    def add_decision(self, decision: str, rationale: str, supporters: list[str]) -> Decision:
        record = Decision(decision=decision, rationale=rationale, made_at=utc_now(), supporters=list(supporters))
        self._state.decisions.append(record)
        logger.info("Decision recorded: %s", decision[:50])
        return record

    # --- Derived views ---

    def calculate_metrics(self, total_agents: int) -> ConsensusMetrics:
        open_blockers = self.open_blockers()
        resolved = [b for b in self._state.blockers if b.status == BlockerStatus.ADDRESSED]

        confidences = [b.confidence for b in self._state.blockers]
        average_confidence = sum(confidences) / len(confidences) if confidences else 5.0

        leading = self.leading_option()
        level = self._state.consensus_level

        return ConsensusMetrics(
            agreement_level=level / 100,
            key_agreements=list(leading.pros[:3]) if leading else [],
            key_disagreements=[b.condition for b in open_blockers[:3]],
            blocker_count=len(open_blockers),
            resolved_blocker_count=len(resolved),
            average_confidence=average_confidence,
            convergence_round=len(self._state.decisions) if level >= 70 else None,
        )

    def to_context_string(self) -> str:
        """Render the state as plain text for inclusion in prompts."""
        s = self._state
        lines = ["=== DISCUSSION STATE ===", "", f"PROBLEM: {s.problem}", ""]

        if s.constraints:
            lines.append("CONSTRAINTS:")
            lines.extend(f"  - {c}" for c in s.constraints)
            lines.append("")

        if s.options:
            lines.append("PROPOSED OPTIONS:")
            for opt in s.options:
                lines.append(f"  [{opt.id}] {opt.proposal}")
                lines.append(f"      Proposed by: {opt.proposed_by}")
                lines.append(f"      Support: {len(opt.supporters)} | Oppose: {len(opt.opponents)}")
                if opt.pros:
                    lines.append(f"      Pros: {'; '.join(opt.pros)}")
                if opt.cons:
                    lines.append(f"      Cons: {'; '.join(opt.cons)}")
                if opt.risks:
                    lines.append(f"      Risks: {'; '.join(opt.risks)}")
            lines.append("")

        open_blockers = self.open_blockers()
        if open_blockers:
            lines.append("OPEN BLOCKERS:")
            for b in open_blockers:
                lines.append(f"  [{b.id}] Severity: {b.severity}/5, Confidence: {b.confidence}/5")
                lines.append(f"      Condition: {b.condition}")
                lines.append(f"      Impact: {b.impact}")
                lines.append(f"      Detection: {b.detection}")
                lines.append(f"      Mitigation: {b.mitigation}")
            lines.append("")

        if s.open_questions:
            lines.append("OPEN QUESTIONS:")
            lines.extend(f"  - {q}" for q in s.open_questions)
            lines.append("")

        if s.decisions:
            lines.append("DECISIONS MADE:")
            for d in s.decisions:
                lines.append(f"  * {d.decision}")
                lines.append(f"    Rationale: {d.rationale}")
            lines.append("")

        lines.append(f"CONSENSUS LEVEL: {round(s.consensus_level)}%")
        lines.append("=== END STATE ===")
        return "\n".join(lines)

    # --- Ingestion ---

    def process_agent_message(self, message: AgentMessage) -> list[Blocker]:
        """Fold one agent turn into the state. Returns the blockers actually added.

        Votes implied by AGREE/DISAGREE/CHALLENGE go to the most recently added
        option, whichever option the turn was actually about.
        """
        added: list[Blocker] = []
        for blocker in message.blockers or []:
            condition = blocker.condition.lower()
            if not any(b.condition.lower() == condition for b in self._state.blockers):
                added.append(self.add_blocker(blocker))

        if message.proposal is not None:
            text = message.proposal.proposal.lower()
            if not any(o.proposal.lower() == text for o in self._state.options):
                self.add_option(message.proposal)

        latest = self._state.options[-1] if self._state.options else None
        if latest is not None:
            if message.stance == Stance.AGREE:
                self.record_vote(latest.id, message.agent_id, True)
            elif message.stance in (Stance.DISAGREE, Stance.CHALLENGE):
                self.record_vote(latest.id, message.agent_id, False)

        return added
