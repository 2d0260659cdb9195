"""Lenient extraction of structural markers from raw agent output.

Agents are asked to tag their turns with:

    [STANCE: AGREE]
    [BLOCKER: condition="..." | impact="..." | detection="..." | mitigation="..." | severity=4 | confidence=3]
    [PROPOSAL: one-sentence proposal]
    [KEY_POINTS: first | second | third]

Every marker is optional. A missing or malformed marker yields its default
(PROPOSE stance, no blockers, no proposal, no key points); parsing never
raises on model output.
"""

import re
import uuid
from dataclasses import dataclass, field

from consensus.models import Blocker, BlockerStatus, DiscussionOption, Stance

_STANCE_RE = re.compile(r"\[STANCE:\s*(PROPOSE|AGREE|DISAGREE|REFINE|CHALLENGE|PASS)\s*\]", re.IGNORECASE)
_BLOCKER_RE = re.compile(
    r"\[BLOCKER:\s*"
    r'condition="([^"]+)"\s*\|\s*'
    r'impact="([^"]+)"\s*\|\s*'
    r'detection="([^"]+)"\s*\|\s*'
    r'mitigation="([^"]+)"\s*\|\s*'
    r"severity=(\d+)\s*\|\s*"
    r"confidence=(\d+)\s*\]",
    re.IGNORECASE,
)
_KEY_POINTS_RE = re.compile(r"\[KEY_POINTS:\s*([^\]]+)\]", re.IGNORECASE)
_PROPOSAL_RE = re.compile(r"\[PROPOSAL:\s*([^\]]+)\]", re.IGNORECASE)

# Blocker conditions shorter than this are treated as noise
MIN_CONDITION_LENGTH = 10


@dataclass
class ParsedTurn:
    stance: Stance = Stance.PROPOSE
    content: str = ""
    key_points: list[str] = field(default_factory=list)
    blockers: list[Blocker] = field(default_factory=list)
    proposal: DiscussionOption | None = None


def new_id(length: int = 8) -> str:
    return uuid.uuid4().hex[:length]


def clamp_score(value: int) -> int:
    """Clamp a severity/confidence score into 1..5."""
    return min(5, max(1, int(value)))


def parse_turn(raw: str, agent_id: str) -> ParsedTurn:
    """Split raw agent output into stance, cleaned content and structured parts."""
    turn = ParsedTurn(content=raw)
    content = raw

    stance_match = _STANCE_RE.search(raw)
    if stance_match:
        turn.stance = Stance(stance_match.group(1).upper())
        content = content.replace(stance_match.group(0), "")

    for match in _BLOCKER_RE.finditer(raw):
        condition = match.group(1).strip()
        content = content.replace(match.group(0), "")
        if len(condition) < MIN_CONDITION_LENGTH:
            continue
        turn.blockers.append(
            Blocker(
                id=new_id(),
                condition=condition,
                impact=match.group(2).strip(),
                detection=match.group(3).strip(),
                mitigation=match.group(4).strip(),
                severity=clamp_score(match.group(5)),
                confidence=clamp_score(match.group(6)),
                raised_by=agent_id,
                status=BlockerStatus.OPEN,
            )
        )

    proposal_match = _PROPOSAL_RE.search(raw)
    if proposal_match:
        text = proposal_match.group(1).strip()
        content = content.replace(proposal_match.group(0), "")
        if text:
            turn.proposal = DiscussionOption(id=new_id(), proposal=text, proposed_by=agent_id)

    key_points_match = _KEY_POINTS_RE.search(raw)
    if key_points_match:
        turn.key_points = [p.strip() for p in key_points_match.group(1).split("|") if p.strip()]
        content = content.replace(key_points_match.group(0), "")

    turn.content = content.strip()
    return turn
