"""One-shot tie-breaker for deadlocked discussions.

The arbiter is consulted when critical blockers pile up, consensus stays low
with nothing decided, or the leading options are tied. It never blocks the
discussion: provider failures fall back to a safe default.
"""

import json
import logging
from dataclasses import dataclass

from consensus.models import (
    ArbiterConfig,
    ArbiterDecision,
    ArbiterVerdict,
    Blocker,
    BlockerStatus,
    DiscussionOption,
    StructuredState,
    TokenUsage,
    utc_now,
)
from consensus.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """You are an ARBITER in a multi-agent consensus discussion. Your role is to make final, binding decisions when agents reach a deadlock.

YOUR RESPONSIBILITIES:
- Review conflicting positions objectively
- Make a clear, reasoned decision
- Provide justification that acknowledges both sides
- Keep decisions actionable and specific

DECISION OPTIONS:
- ACCEPT: The blocker/concern is valid and should be addressed
- REJECT: The blocker/concern is not critical enough to block progress
- MERGE: Combine elements from both positions into a resolution

OUTPUT FORMAT:
You must respond with a JSON object:
{
  "decision": "accept" | "reject" | "merge",
  "rationale": "Clear explanation of your reasoning (2-3 sentences)",
  "mergedResolution": "If merge, the combined solution (required for merge, optional otherwise)"
}

Be decisive. Your goal is to unblock progress, not to achieve perfect consensus."""

_DECISION_TEMPERATURE = 0.3


@dataclass
class DeadlockResolution:
    winner_id: str
    rationale: str


def extract_json_object(text: str) -> dict | None:
    """Decode the first JSON object embedded in free text."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text[start:])
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def parse_decision(response: str, blocker_id: str) -> ArbiterDecision:
    """Turn the arbiter's reply into a decision, leniently."""
    parsed = extract_json_object(response)
    if parsed is not None:
        try:
            verdict = ArbiterVerdict(str(parsed.get("decision", "merge")).lower())
        except ValueError:
            verdict = ArbiterVerdict.MERGE
        merged = parsed.get("mergedResolution") or parsed.get("merged_resolution")
        return ArbiterDecision(
            blocker_id=blocker_id,
            decision=verdict,
            rationale=str(parsed.get("rationale") or "Decision made by arbiter."),
            timestamp=utc_now(),
            merged_resolution=str(merged) if merged else None,
        )

    lower = response.lower()
    if "accept" in lower or "valid concern" in lower:
        verdict = ArbiterVerdict.ACCEPT
    elif "reject" in lower or "not critical" in lower:
        verdict = ArbiterVerdict.REJECT
    else:
        verdict = ArbiterVerdict.MERGE
    return ArbiterDecision(
        blocker_id=blocker_id,
        decision=verdict,
        rationale=response[:200] or "Unable to parse decision; defaulting to merge.",
        timestamp=utc_now(),
    )


class Arbiter:
    def __init__(self, config: ArbiterConfig, provider: AIProvider) -> None:
        self.config = config
        self.provider = provider
        self.last_usage: TokenUsage | None = None

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    async def resolve_blocker(
        self,
        blocker: Blocker,
        state: StructuredState,
        dispute_context: str | None = None,
    ) -> ArbiterDecision:
        logger.info("Arbiter resolving blocker %s (severity %d)", blocker.id, blocker.severity)
        other_open = sum(1 for b in state.blockers if b.id != blocker.id and b.status == BlockerStatus.OPEN)

        prompt = (
            "A blocker has been raised that cannot be resolved through normal discussion.\n\n"
            "BLOCKER DETAILS:\n"
            f"- Condition: {blocker.condition}\n"
            f"- Impact: {blocker.impact}\n"
            f"- Detection: {blocker.detection}\n"
            f"- Proposed Mitigation: {blocker.mitigation}\n"
            f"- Severity: {blocker.severity}/5\n"
            f"- Confidence: {blocker.confidence}/5\n"
            f"- Raised by: {blocker.raised_by}\n\n"
            "CURRENT DISCUSSION STATE:\n"
            f"Problem: {state.problem}\n"
            f"Consensus Level: {round(state.consensus_level)}%\n"
            f"Open Questions: {len(state.open_questions)}\n"
            f"Other Blockers: {other_open}\n\n"
        )
        if dispute_context:
            prompt += f"DISPUTE CONTEXT:\n{dispute_context}\n\n"
        prompt += (
            "Please make a decision on this blocker. Should it be accepted (blocking progress until "
            "resolved), rejected (allowing progress despite the concern), or merged (combining the "
            "concern with the current approach)?"
        )

        self.last_usage = None
        try:
            result = await self.provider.chat(
                [{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
                temperature=_DECISION_TEMPERATURE,
                max_tokens=500,
            )
        except ProviderError as exc:
            logger.error("Arbiter failed to resolve blocker %s: %s", blocker.id, exc)
            return ArbiterDecision(
                blocker_id=blocker.id,
                decision=ArbiterVerdict.MERGE,
                rationale="Arbiter encountered an error; defaulting to merge to maintain progress.",
                timestamp=utc_now(),
                merged_resolution=blocker.mitigation,
            )

        self.last_usage = result.usage
        decision = parse_decision(result.content, blocker.id)
        logger.info("Arbiter decision: %s", decision.decision.value)
        return decision

    async def resolve_deadlock(
        self,
        options: list[DiscussionOption],
        state: StructuredState,
    ) -> DeadlockResolution:
        """Pick a winner among tied options; falls back to the most supported one."""
        logger.info("Arbiter resolving deadlock between %d options", len(options))

        options_text = "\n\n".join(
            f"Option {i} [{opt.id}]: {opt.proposal}\n"
            f"   Supporters: {len(opt.supporters)} | Opponents: {len(opt.opponents)}"
            for i, opt in enumerate(options, start=1)
        )
        open_count = sum(1 for b in state.blockers if b.status == BlockerStatus.OPEN)
        prompt = (
            "Multiple options are deadlocked with no clear winner.\n\n"
            f"OPTIONS:\n{options_text}\n\n"
            "CONTEXT:\n"
            f"Problem: {state.problem}\n"
            f"Constraints: {', '.join(state.constraints)}\n"
            f"Open Blockers: {open_count}\n\n"
            "Which option should be selected? Consider:\n"
            "1. Alignment with the problem statement\n"
            "2. Feasibility given constraints\n"
            "3. Risk profile\n"
            "4. Potential for addressing open blockers\n\n"
            "Respond with JSON:\n"
            '{\n  "winnerId": "the ID of the winning option",\n  "rationale": "2-3 sentence explanation"\n}'
        )

        self.last_usage = None
        valid_ids = {opt.id for opt in options}
        try:
            result = await self.provider.chat(
                [{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
                temperature=_DECISION_TEMPERATURE,
                max_tokens=300,
            )
        except ProviderError as exc:
            logger.error("Arbiter failed to resolve deadlock: %s", exc)
        else:
            self.last_usage = result.usage
            parsed = extract_json_object(result.content)
            if parsed is not None:
                winner = str(parsed.get("winnerId") or parsed.get("winner_id") or "")
                return DeadlockResolution(
                    winner_id=winner if winner in valid_ids else options[0].id,
                    rationale=str(parsed.get("rationale") or "Arbiter selected this option."),
                )

        most_supported = max(options, key=lambda o: len(o.supporters))
        return DeadlockResolution(
            winner_id=most_supported.id,
            rationale="Arbiter defaulted to option with most support.",
        )

    @staticmethod
    def needs_arbitration(state: StructuredState, max_open_blockers: int = 3) -> bool:
        critical = [
            b for b in state.blockers
            if b.status in (BlockerStatus.OPEN, BlockerStatus.DISPUTED) and b.severity >= 4 and b.confidence >= 4
        ]
        if len(critical) >= max_open_blockers:
            return True

        if state.consensus_level < 30 and not state.decisions:
            return True

        supported = sorted(
            (o for o in state.options if o.supporters),
            key=lambda o: len(o.supporters),
            reverse=True,
        )
        return len(supported) >= 2 and len(supported[0].supporters) == len(supported[1].supporters)
