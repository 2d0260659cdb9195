"""Phase/round state machine and static discussion heuristics."""

import random
from collections import Counter
from dataclasses import dataclass, field

from consensus.models import AgentMessage, Message, Phase, Stance

PHASE_GUIDANCE = {
    Phase.OPENING: "Share your initial perspective on the topic. "
                   "What are the key considerations from your viewpoint?",
    Phase.DISCUSSION: "Engage with other perspectives. Agree, disagree, or refine ideas. "
                      "Reference specific points made by others.",
    Phase.SYNTHESIS: "Work toward integrating the best ideas. "
                     "Propose unified solutions that address multiple concerns.",
    Phase.CONSENSUS: "State your final position. "
                     "Confirm agreements or clearly note remaining disagreements.",
}

SPEAKING_ORDER_STRATEGIES = ("round-robin", "random", "engagement")


@dataclass
class AdvanceResult:
    new_phase: Phase
    new_round: int
    phase_changed: bool


@dataclass
class ValidationResult:
    valid: bool
    issues: list[str] = field(default_factory=list)


@dataclass
class ConsensusAnalysis:
    agreement_level: float          # 0-1
    dominant_stance: Stance
    key_agreements: list[str]
    key_disagreements: list[str]


class DiscussionProtocol:
    """Tracks phase and round for one discussion.

    ``advance()`` out of DISCUSSION switches to SYNTHESIS once the round it is
    called from is ``total_rounds - 1`` or later, and the round counter is
    bumped on every DISCUSSION/SYNTHESIS advance. The engine drives phases
    from its round plans and only uses this for bookkeeping.
    """

    def __init__(self, total_rounds: int, agent_count: int) -> None:
        self.total_rounds = total_rounds
        self.agent_count = agent_count
        self._phase = Phase.OPENING
        self._round = 0
        self._messages_this_round = 0

    def state(self) -> tuple[Phase, int]:
        return self._phase, self._round

    def start(self) -> None:
        self._phase = Phase.OPENING
        self._round = 1
        self._messages_this_round = 0

    def record_agent_message(self) -> None:
        self._messages_this_round += 1

    def is_round_complete(self) -> bool:
        return self._messages_this_round >= self.agent_count

    def advance(self) -> AdvanceResult:
        old_phase = self._phase
        self._messages_this_round = 0

        if self._phase == Phase.OPENING:
            self._phase = Phase.DISCUSSION
        elif self._phase == Phase.DISCUSSION:
            if self._round >= self.total_rounds - 1:
                self._phase = Phase.SYNTHESIS
            self._round += 1
        elif self._phase == Phase.SYNTHESIS:
            self._phase = Phase.CONSENSUS
            self._round += 1

        return AdvanceResult(self._phase, self._round, old_phase != self._phase)

    def is_complete(self) -> bool:
        return self._phase == Phase.CONSENSUS and self.is_round_complete()

    def phase_guidance(self) -> str:
        return PHASE_GUIDANCE.get(self._phase, "")

    # --- Static heuristics ---

    @staticmethod
    def analyze_consensus(messages: list[Message]) -> ConsensusAnalysis:
        """Stance-based agreement estimate over every agent message.

        agreement = (positive - 0.5 * negative + total) / (2 * total), clamped
        to 0..1, where positive is AGREE+REFINE and negative DISAGREE+CHALLENGE.
        """
        agent_messages = [m for m in messages if isinstance(m, AgentMessage)]
        if not agent_messages:
            return ConsensusAnalysis(0.0, Stance.PROPOSE, [], [])

        stance_counts = {stance: 0 for stance in Stance}
        for msg in agent_messages:
            stance_counts[msg.stance] += 1

        positive = stance_counts[Stance.AGREE] + stance_counts[Stance.REFINE]
        negative = stance_counts[Stance.DISAGREE] + stance_counts[Stance.CHALLENGE]
        total = len(agent_messages)
        agreement = (positive - negative * 0.5 + total) / (2 * total)

        # max() keeps the first of equal counts, so ties go to enum order
        dominant = max(stance_counts, key=lambda s: stance_counts[s])

        point_counts = Counter(
            point.lower().strip() for msg in agent_messages for point in msg.key_points
        )
        key_agreements = [point for point, count in point_counts.most_common() if count > 1][:5]

        key_disagreements = [
            point
            for msg in agent_messages
            if msg.stance in (Stance.DISAGREE, Stance.CHALLENGE)
            for point in msg.key_points
        ][:5]

        return ConsensusAnalysis(
            agreement_level=max(0.0, min(1.0, agreement)),
            dominant_stance=dominant,
            key_agreements=key_agreements,
            key_disagreements=key_disagreements,
        )

    @staticmethod
    def determine_speaking_order(
        agent_ids: list[str],
        messages: list[Message],
        strategy: str = "round-robin",
    ) -> list[str]:
        """Order speakers for a round.

        ``engagement`` puts agents mentioned least often first so the most
        referenced agents get to respond to critiques. Unknown strategies
        fall back to round-robin.
        """
        if strategy == "random":
            order = list(agent_ids)
            random.shuffle(order)
            return order

        if strategy == "engagement":
            references = {agent_id: 0 for agent_id in agent_ids}
            for msg in messages:
                if not isinstance(msg, AgentMessage):
                    continue
                for agent_id in agent_ids:
                    if agent_id in msg.content:
                        references[agent_id] += 1
            return sorted(agent_ids, key=lambda a: references[a])

        return list(agent_ids)

    @staticmethod
    def validate_message(
        message: AgentMessage,
        phase: Phase,
        previous_messages: list[Message],
    ) -> ValidationResult:
        issues: list[str] = []

        if len(message.content) < 50:
            issues.append("Response too short - please provide more substantive input")
        if len(message.content) > 5000:
            issues.append("Response too long - please be more concise")

        if not message.key_points:
            issues.append("No key points extracted - please structure response with [KEY_POINTS: ...]")

        if phase == Phase.CONSENSUS and message.stance == Stance.PASS:
            issues.append("Cannot PASS during consensus phase - please state your final position")

        if phase != Phase.OPENING and previous_messages:
            other_names = {
                m.agent_name
                for m in previous_messages
                if isinstance(m, AgentMessage) and m.agent_id != message.agent_id
            }
            content = message.content.lower()
            if other_names and not any(name.lower() in content for name in other_names):
                issues.append("Consider engaging with other participants' points")

        return ValidationResult(valid=not issues, issues=issues)
