"""A persona-driven participant backed by one chat provider."""

import logging
import string
from collections.abc import AsyncIterator
from dataclasses import dataclass

from consensus.algorithms import ContextMode
from consensus.models import AgentConfig, AgentMessage, Message, Phase, utc_now
from consensus.parsing import new_id, parse_turn
from consensus.providers.base import AIProvider, ChatMessage

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 10

_RESPONSE_FORMAT = """RESPONSE FORMAT:
You MUST structure your response with these markers:
1. Start with your STANCE on a new line: [STANCE: PROPOSE|AGREE|DISAGREE|REFINE|CHALLENGE|PASS]
2. Then provide your RESPONSE
3. If you are putting forward a concrete solution, state it in one sentence: [PROPOSAL: the proposal]
4. If you have serious concerns, raise BLOCKERS (structured objections):
   [BLOCKER: condition="when this fails" | impact="what breaks" | detection="how to notice" | mitigation="what to do" | severity=1-5 | confidence=1-5]
5. End with KEY POINTS on a new line: [KEY_POINTS: point1 | point2 | point3]

Example with BLOCKER:
[STANCE: CHALLENGE]
I see significant risks with this approach...
[BLOCKER: condition="API rate limits exceeded during peak" | impact="Service degradation for all users" | detection="Monitor 429 responses" | mitigation="Implement exponential backoff and queue" | severity=4 | confidence=4]
[KEY_POINTS: Rate limiting is critical | Need fallback strategy | Consider circuit breaker pattern]

BLOCKER Guidelines:
- severity 1-2: Minor concerns, can proceed
- severity 3: Moderate concern, should address before finalizing
- severity 4-5: Critical concern, must resolve before proceeding
- confidence 1-2: Speculation, needs validation
- confidence 3: Reasonable belief based on experience
- confidence 4-5: High certainty based on evidence

RULES:
- Stay in character according to your personality
- Reference other agents' points by name when responding
- Be constructive even when disagreeing
- Use BLOCKER format for serious objections (not minor preferences)
- Focus on the topic at hand
- Keep responses focused and avoid repetition"""


@dataclass
class TurnChunk:
    content: str
    message: AgentMessage | None = None     # set on the terminal chunk only


def _participant_label(index: int) -> str:
    letters = string.ascii_uppercase
    if index < len(letters):
        return f"Participant {letters[index]}"
    return f"Participant {index + 1}"


class Agent:
    def __init__(self, config: AgentConfig, provider: AIProvider) -> None:
        self.id = config.id
        self.name = config.name
        self.config = config
        self.provider = provider

    def describe(self) -> str:
        return f"{self.name} ({self.config.provider.value}:{self.config.model}) - {self.config.personality.name}"

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    def build_system_prompt(self, topic: str, depth: int, current_round: int) -> str:
        p = self.config.personality
        traits = "\n".join(f"- {t}" for t in p.traits) or "- (none specified)"

        if current_round <= 1:
            round_hint = "This is the opening round - share your initial perspective."
        elif current_round >= depth:
            round_hint = "This is the FINAL round - focus on synthesis and actionable conclusions."
        else:
            round_hint = "Build on previous points, refine ideas, and address disagreements."

        return (
            f"You are {self.name}, participating in a structured consensus discussion.\n\n"
            f"TOPIC: {topic}\n\n"
            f"YOUR PERSONALITY:\n{p.description}\n\n"
            f"YOUR TRAITS:\n{traits}\n\n"
            f"COMMUNICATION STYLE:\n- Tone: {p.tone}\n\n"
            f"{p.system_prompt_addition}\n\n"
            "DISCUSSION CONTEXT:\n"
            f"- This is round {current_round} of {depth} total rounds\n"
            f"- {round_hint}\n\n"
            f"{_RESPONSE_FORMAT}"
        )

    def format_context(
        self,
        transcript: list[Message],
        phase: Phase,
        moderator_summary: str | None = None,
        context_mode: ContextMode = ContextMode.FULL,
    ) -> str:
        agent_messages = [m for m in transcript if isinstance(m, AgentMessage)]
        lines = ["", "--- DISCUSSION SO FAR ---"]

        if moderator_summary:
            lines += ["", "MODERATOR SUMMARY:", moderator_summary]

        if context_mode == ContextMode.DEBATE:
            latest: dict[str, AgentMessage] = {}
            for msg in agent_messages:
                if msg.agent_id != self.id:
                    latest[msg.agent_id] = msg
            if latest:
                lines += ["", "Rebut or build on the strongest argument of each other participant below."]
            for msg in latest.values():
                lines += ["", f"[{msg.agent_name}] argues ({msg.stance.value}):", msg.content]
                if msg.key_points:
                    lines.append(f"Arguments: {', '.join(msg.key_points)}")
        else:
            labels: dict[str, str] = {}
            for msg in agent_messages[-CONTEXT_WINDOW:]:
                if context_mode == ContextMode.ANONYMOUS:
                    if msg.agent_id == self.id:
                        speaker = "You"
                    else:
                        speaker = labels.setdefault(msg.agent_id, _participant_label(len(labels)))
                else:
                    speaker = msg.agent_name
                lines += ["", f"[{speaker}] ({msg.stance.value}):", msg.content]
                if msg.key_points:
                    lines.append(f"Key points: {', '.join(msg.key_points)}")

        lines += ["", "--- YOUR TURN ---", f"Current phase: {phase.value}", "Please provide your response:"]
        return "\n".join(lines) + "\n"

    def _messages(
        self,
        topic: str,
        depth: int,
        current_round: int,
        phase: Phase,
        transcript: list[Message],
        moderator_summary: str | None,
        context_mode: ContextMode,
    ) -> list[ChatMessage]:
        return [
            {"role": "system", "content": self.build_system_prompt(topic, depth, current_round)},
            {"role": "user", "content": self.format_context(transcript, phase, moderator_summary, context_mode)},
        ]

    def _to_message(self, raw: str, phase: Phase, current_round: int, usage) -> AgentMessage:
        turn = parse_turn(raw, self.id)
        return AgentMessage(
            id=new_id(),
            agent_id=self.id,
            agent_name=self.name,
            timestamp=utc_now(),
            phase=phase,
            round=current_round,
            stance=turn.stance,
            content=turn.content,
            key_points=turn.key_points,
            blockers=turn.blockers or None,
            proposal=turn.proposal,
            token_usage=usage,
        )

    async def respond(
        self,
        topic: str,
        depth: int,
        current_round: int,
        phase: Phase,
        transcript: list[Message],
        moderator_summary: str | None = None,
        context_mode: ContextMode = ContextMode.FULL,
    ) -> AgentMessage:
        messages = self._messages(topic, depth, current_round, phase, transcript, moderator_summary, context_mode)
        result = await self.provider.chat(
            messages, temperature=self.config.temperature, max_tokens=self.config.max_tokens
        )
        logger.debug("%s responded in %s round %d", self.name, phase.value, current_round)
        return self._to_message(result.content, phase, current_round, result.usage)

    async def respond_stream(
        self,
        topic: str,
        depth: int,
        current_round: int,
        phase: Phase,
        transcript: list[Message],
        moderator_summary: str | None = None,
        context_mode: ContextMode = ContextMode.FULL,
    ) -> AsyncIterator[TurnChunk]:
        messages = self._messages(topic, depth, current_round, phase, transcript, moderator_summary, context_mode)
        parts: list[str] = []
        async for chunk in self.provider.chat_stream(
            messages, temperature=self.config.temperature, max_tokens=self.config.max_tokens
        ):
            parts.append(chunk.content)
            if chunk.done:
                message = self._to_message("".join(parts), phase, current_round, chunk.usage)
                yield TurnChunk(content=chunk.content, message=message)
                return
            yield TurnChunk(content=chunk.content)
