"""Neutral facilitator: opens, summarizes, transitions and concludes the discussion."""

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass

from consensus.models import (
    AgentConfig,
    AgentMessage,
    Message,
    ModeratorConfig,
    ModeratorMessage,
    ModeratorMessageType,
    Phase,
    TokenUsage,
    utc_now,
)
from consensus.parsing import new_id
from consensus.providers.base import AIProvider, ChatMessage, ProviderError

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """You are a MODERATOR facilitating a structured consensus discussion between AI agents.

YOUR ROLE:
- Guide the discussion professionally and neutrally
- Summarize key points and areas of agreement/disagreement
- Help agents build on each other's ideas
- Identify when consensus is forming or when positions are irreconcilable
- Keep the discussion focused and productive
- Transition between phases smoothly

COMMUNICATION STYLE:
- Professional and neutral
- Clear and structured
- Encouraging but objective
- Focus on substance over personalities

OUTPUT FORMAT:
When providing summaries or transitions, structure your response clearly:
1. Brief overview of discussion state
2. Key agreements identified (if any)
3. Key disagreements or open questions (if any)
4. Guidance for next phase/round"""

_SUMMARY_AGREEMENTS_RE = re.compile(
    r"agreements?:?\s*\n([\s\S]*?)(?=\n\n|\nkey disagreements?|\ndisagreements?|$)", re.IGNORECASE
)
_SUMMARY_DISAGREEMENTS_RE = re.compile(r"disagreements?:?\s*\n([\s\S]*?)(?=\n\n|\nguidance|$)", re.IGNORECASE)
_CONCLUSION_AGREEMENTS_RE = re.compile(r"consensus reached:?\s*\n([\s\S]*?)(?=\n\n|\nkey insights?|$)", re.IGNORECASE)
_CONCLUSION_OPEN_RE = re.compile(r"remaining questions?:?\s*\n([\s\S]*?)(?=\n\n|\nactionable|$)", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[\s\-•*]+")
_HEADING_RE = re.compile(r"^(key|remaining|disagreements?|agreements?)", re.IGNORECASE)

_ANONYMOUS_NOTE = (
    "\nDo not name or otherwise identify individual participants; "
    "report positions in aggregate."
)


def extract_list_items(text: str, pattern: re.Pattern) -> list[str]:
    """Pull bullet lines out of the section matched by ``pattern``."""
    match = pattern.search(text)
    if not match or not match.group(1):
        return []
    items = []
    for line in match.group(1).split("\n"):
        item = _BULLET_RE.sub("", line).strip()
        if item and not _HEADING_RE.match(item):
            items.append(item)
    return items


def format_transcript(messages: list[Message], anonymous: bool = False) -> str:
    labels: dict[str, str] = {}
    blocks = []
    for msg in messages:
        if isinstance(msg, AgentMessage):
            if anonymous:
                speaker = labels.setdefault(msg.agent_id, f"Participant {len(labels) + 1}")
            else:
                speaker = msg.agent_name
            blocks.append(
                f"[{speaker}] ({msg.stance.value}):\n{msg.content}\nKey points: {', '.join(msg.key_points)}"
            )
        else:
            blocks.append(f"[MODERATOR] ({msg.type.value}):\n{msg.content}")
    return "\n\n".join(blocks)


@dataclass
class SummaryChunk:
    content: str
    message: ModeratorMessage | None = None     # set on the terminal chunk only


class Moderator:
    def __init__(self, config: ModeratorConfig, provider: AIProvider) -> None:
        self.config = config
        self.provider = provider

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    async def _chat(self, prompt: str, temperature: float | None = None, max_tokens: int = 1024):
        messages: list[ChatMessage] = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.provider.chat(
                    messages,
                    temperature=self.config.temperature if temperature is None else temperature,
                    max_tokens=max_tokens,
                ),
                timeout=self.config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError("moderator", f"Moderator timed out after {self.config.timeout_sec}s") from exc
        logger.debug("Moderator call completed in %.2fs", time.monotonic() - start)
        return result

    async def introduce(self, topic: str, agents: list[AgentConfig], depth: int) -> ModeratorMessage:
        participants = "\n".join(
            f"- {a.name}: {a.personality.name} - {a.personality.description[:100]}..." for a in agents
        )
        prompt = (
            "You are opening a consensus discussion.\n\n"
            f"TOPIC: {topic}\n\n"
            f"PARTICIPANTS:\n{participants}\n\n"
            "DISCUSSION STRUCTURE:\n"
            f"- {depth} rounds of discussion\n"
            "- Phases: Opening -> Discussion -> Synthesis -> Consensus\n\n"
            "Please provide an opening statement that:\n"
            "1. Introduces the topic clearly\n"
            "2. Briefly acknowledges the diverse perspectives present\n"
            "3. Sets expectations for constructive dialogue\n"
            "4. Encourages agents to share their initial positions\n\n"
            "Keep it concise (2-3 paragraphs)."
        )
        result = await self._chat(prompt)
        return ModeratorMessage(
            id=new_id(),
            timestamp=utc_now(),
            phase=Phase.OPENING,
            round=0,
            type=ModeratorMessageType.INTRODUCTION,
            content=result.content,
            token_usage=result.usage,
        )

    def _summary_prompt(self, topic: str, messages: list[Message], current_round: int, total_rounds: int,
                        anonymous: bool) -> str:
        prompt = (
            f'Please summarize round {current_round} of {total_rounds} on the topic: "{topic}"\n\n'
            f"DISCUSSION SO FAR:\n{format_transcript(messages, anonymous)}\n\n"
            "Provide:\n"
            "1. A brief summary of what was discussed this round\n"
            "2. Key AGREEMENTS that emerged (list them clearly)\n"
            "3. Key DISAGREEMENTS or unresolved questions (list them clearly)\n"
            f"4. Specific guidance for round {current_round + 1} (what should agents focus on?)\n\n"
            "Format your response with clear sections."
        )
        if anonymous:
            prompt += _ANONYMOUS_NOTE
        return prompt

    def _summary_message(self, content: str, current_round: int, usage: TokenUsage | None) -> ModeratorMessage:
        return ModeratorMessage(
            id=new_id(),
            timestamp=utc_now(),
            phase=Phase.DISCUSSION,
            round=current_round,
            type=ModeratorMessageType.SUMMARY,
            content=content,
            identified_agreements=extract_list_items(content, _SUMMARY_AGREEMENTS_RE),
            identified_disagreements=extract_list_items(content, _SUMMARY_DISAGREEMENTS_RE),
            token_usage=usage,
        )

    async def summarize_round(
        self,
        topic: str,
        messages: list[Message],
        current_round: int,
        total_rounds: int,
        anonymous: bool = False,
    ) -> ModeratorMessage:
        result = await self._chat(self._summary_prompt(topic, messages, current_round, total_rounds, anonymous))
        return self._summary_message(result.content, current_round, result.usage)

    async def summarize_round_stream(
        self,
        topic: str,
        messages: list[Message],
        current_round: int,
        total_rounds: int,
        anonymous: bool = False,
    ) -> AsyncIterator[SummaryChunk]:
        chat: list[ChatMessage] = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": self._summary_prompt(topic, messages, current_round, total_rounds, anonymous)},
        ]
        parts: list[str] = []
        async for chunk in self.provider.chat_stream(chat, temperature=self.config.temperature):
            parts.append(chunk.content)
            if chunk.done:
                yield SummaryChunk(chunk.content, self._summary_message("".join(parts), current_round, chunk.usage))
                return
            yield SummaryChunk(chunk.content)

    async def transition_phase(
        self,
        topic: str,
        messages: list[Message],
        from_phase: Phase,
        to_phase: Phase,
        current_round: int,
    ) -> ModeratorMessage:
        prompt = (
            f"The discussion is transitioning from {from_phase.value} to {to_phase.value}.\n\n"
            f"TOPIC: {topic}\n\n"
            f"RECENT DISCUSSION:\n{format_transcript(messages[-10:])}\n\n"
            "Please provide a brief transition statement that:\n"
            f"1. Acknowledges what was accomplished in {from_phase.value}\n"
            f"2. Explains what {to_phase.value} will focus on\n"
            f"3. Gives clear instructions for how agents should approach {to_phase.value}\n\n"
            "Keep it concise (1-2 paragraphs)."
        )
        result = await self._chat(prompt)
        return ModeratorMessage(
            id=new_id(),
            timestamp=utc_now(),
            phase=to_phase,
            round=current_round,
            type=ModeratorMessageType.TRANSITION,
            content=result.content,
            token_usage=result.usage,
        )

    async def conclude(self, topic: str, messages: list[Message], total_rounds: int) -> ModeratorMessage:
        prompt = (
            f'The discussion on "{topic}" has concluded after {total_rounds} rounds.\n\n'
            f"FULL DISCUSSION:\n{format_transcript(messages)}\n\n"
            "Please provide a comprehensive conclusion that includes:\n\n"
            "1. EXECUTIVE SUMMARY (2-3 sentences capturing the main outcome)\n\n"
            "2. CONSENSUS REACHED (clearly state what the group agreed on)\n\n"
            "3. KEY INSIGHTS (the most valuable ideas that emerged)\n\n"
            "4. REMAINING QUESTIONS (any unresolved disagreements or areas for future exploration)\n\n"
            "5. ACTIONABLE RECOMMENDATIONS (if applicable, concrete next steps)\n\n"
            "Be thorough but structured. This will be the primary output of the discussion."
        )
        result = await self._chat(prompt, temperature=0.3, max_tokens=2048)
        return ModeratorMessage(
            id=new_id(),
            timestamp=utc_now(),
            phase=Phase.CONSENSUS,
            round=total_rounds,
            type=ModeratorMessageType.CONCLUSION,
            content=result.content,
            identified_agreements=extract_list_items(result.content, _CONCLUSION_AGREEMENTS_RE),
            identified_disagreements=extract_list_items(result.content, _CONCLUSION_OPEN_RE),
            token_usage=result.usage,
        )
