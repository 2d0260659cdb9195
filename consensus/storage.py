"""JSON persistence of SessionState snapshots under ``.consensus/``.

Every nested dataclass, enum and timestamp round-trips exactly. Messages are
tagged with ``kind`` and abort reasons with ``type`` so the sum types can be
rebuilt on load.
"""

import dataclasses
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from consensus.models import (
    AbortReason,
    AgentConfig,
    AgentMessage,
    ArbiterConfig,
    ArbiterDecision,
    ArbiterVerdict,
    Blocker,
    BlockerLimit,
    BlockerStatus,
    ConsensusMetrics,
    CostEntry,
    CostLimit,
    CostSummary,
    Deadlock,
    Decision,
    DiscussionConfig,
    DiscussionLimits,
    DiscussionOption,
    Message,
    MessageKind,
    ModeratorConfig,
    ModeratorMessage,
    ModeratorMessageType,
    NeedsHuman,
    Personality,
    Phase,
    Provider,
    SessionState,
    Stance,
    StructuredState,
    TimeLimit,
    TokenLimit,
    TokenUsage,
    UserInterrupt,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_DIR = ".consensus"
EXPORT_VERSION = "1.0"

_ABORT_TYPES: dict[str, type] = {
    cls.type: cls for cls in (CostLimit, TimeLimit, TokenLimit, BlockerLimit, Deadlock, NeedsHuman, UserInterrupt)
}


# --- Encoding ---


def to_jsonable(obj: Any) -> Any:
    """Recursively convert dataclasses, enums and datetimes to JSON-ready values."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        data = {f.name: to_jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
        if isinstance(obj, (AgentMessage, ModeratorMessage)):
            data["kind"] = obj.kind.value
        elif type(obj) in _ABORT_TYPES.values():
            data["type"] = obj.type
        return data
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    return obj


# --- Decoding ---


def _dt(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _opt(decoder, value):
    return decoder(value) if value is not None else None


def _tokens(d: dict) -> TokenUsage:
    return TokenUsage(d["prompt_tokens"], d["completion_tokens"], d["total_tokens"])


def _blocker(d: dict) -> Blocker:
    return Blocker(
        id=d["id"],
        condition=d["condition"],
        impact=d["impact"],
        detection=d["detection"],
        mitigation=d["mitigation"],
        severity=int(d["severity"]),
        confidence=int(d["confidence"]),
        raised_by=d["raised_by"],
        status=BlockerStatus(d.get("status", "open")),
        resolution=d.get("resolution"),
    )


def _option(d: dict) -> DiscussionOption:
    return DiscussionOption(
        id=d["id"],
        proposal=d["proposal"],
        proposed_by=d["proposed_by"],
        pros=list(d.get("pros", [])),
        cons=list(d.get("cons", [])),
        risks=list(d.get("risks", [])),
        supporters=list(d.get("supporters", [])),
        opponents=list(d.get("opponents", [])),
    )


def _decision(d: dict) -> Decision:
    return Decision(d["decision"], d["rationale"], _dt(d["made_at"]), list(d.get("supporters", [])))


def structured_state_from_dict(d: dict) -> StructuredState:
    return StructuredState(
        problem=d["problem"],
        constraints=list(d.get("constraints", [])),
        options=[_option(o) for o in d.get("options", [])],
        open_questions=list(d.get("open_questions", [])),
        decisions=[_decision(x) for x in d.get("decisions", [])],
        blockers=[_blocker(b) for b in d.get("blockers", [])],
        consensus_level=float(d.get("consensus_level", 0.0)),
    )


def message_from_dict(d: dict) -> Message:
    if d.get("kind") == MessageKind.MODERATOR.value:
        return ModeratorMessage(
            id=d["id"],
            timestamp=_dt(d["timestamp"]),
            phase=Phase(d["phase"]),
            round=d["round"],
            type=ModeratorMessageType(d["type"]),
            content=d["content"],
            identified_agreements=d.get("identified_agreements"),
            identified_disagreements=d.get("identified_disagreements"),
            token_usage=_opt(_tokens, d.get("token_usage")),
        )
    blockers = d.get("blockers")
    return AgentMessage(
        id=d["id"],
        agent_id=d["agent_id"],
        agent_name=d["agent_name"],
        timestamp=_dt(d["timestamp"]),
        phase=Phase(d["phase"]),
        round=d["round"],
        stance=Stance(d["stance"]),
        content=d["content"],
        key_points=list(d.get("key_points", [])),
        referenced_message_ids=list(d.get("referenced_message_ids", [])),
        blockers=[_blocker(b) for b in blockers] if blockers is not None else None,
        proposal=_opt(_option, d.get("proposal")),
        token_usage=_opt(_tokens, d.get("token_usage")),
    )


def _cost_entry(d: dict) -> CostEntry:
    return CostEntry(
        agent_id=d["agent_id"],
        agent_name=d["agent_name"],
        provider=d["provider"],
        model=d["model"],
        timestamp=_dt(d["timestamp"]),
        tokens=_tokens(d["tokens"]),
        estimated_cost=float(d["estimated_cost"]),
        phase=Phase(d["phase"]),
        round=d["round"],
    )


def _cost_summary(d: dict) -> CostSummary:
    return CostSummary(
        total_tokens=_tokens(d["total_tokens"]),
        total_cost=float(d["total_cost"]),
        cost_by_agent=dict(d.get("cost_by_agent", {})),
        cost_by_phase=dict(d.get("cost_by_phase", {})),
        cost_by_round={int(k): v for k, v in d.get("cost_by_round", {}).items()},
        average_cost_per_message=float(d.get("average_cost_per_message", 0.0)),
    )


def _metrics(d: dict) -> ConsensusMetrics:
    return ConsensusMetrics(**d)


def abort_reason_from_dict(d: dict) -> AbortReason:
    data = dict(d)
    cls = _ABORT_TYPES[data.pop("type")]
    if cls is NeedsHuman:
        return NeedsHuman(blockers=[_blocker(b) for b in data["blockers"]])
    return cls(**data)


def _arbiter_decision(d: dict) -> ArbiterDecision:
    return ArbiterDecision(
        blocker_id=d["blocker_id"],
        decision=ArbiterVerdict(d["decision"]),
        rationale=d["rationale"],
        timestamp=_dt(d["timestamp"]),
        merged_resolution=d.get("merged_resolution"),
    )


def config_from_dict(d: dict) -> DiscussionConfig:
    def agent(a: dict) -> AgentConfig:
        return AgentConfig(
            **{**a, "provider": Provider(a["provider"]), "personality": Personality(**a["personality"])}
        )

    moderator = d["moderator"]
    arbiter = d.get("arbiter")
    limits = d.get("limits")
    return DiscussionConfig(
        topic=d["topic"],
        depth=d["depth"],
        agents=[agent(a) for a in d["agents"]],
        moderator=ModeratorConfig(**{**moderator, "provider": Provider(moderator["provider"])}),
        arbiter=ArbiterConfig(**{**arbiter, "provider": Provider(arbiter["provider"])}) if arbiter else None,
        limits=DiscussionLimits(**limits) if limits else None,
        algorithm=d.get("algorithm", "sequential"),
        speaking_order=d.get("speaking_order", "round-robin"),
        continue_from_session=d.get("continue_from_session"),
    )


def session_from_dict(d: dict) -> SessionState:
    return SessionState(
        id=d["id"],
        created_at=_dt(d["created_at"]),
        updated_at=_dt(d["updated_at"]),
        config=config_from_dict(d["config"]),
        current_phase=Phase(d.get("current_phase", "OPENING")),
        current_round=d.get("current_round", 0),
        messages=[message_from_dict(m) for m in d.get("messages", [])],
        is_complete=d.get("is_complete", False),
        consensus_reached=d.get("consensus_reached", False),
        final_consensus=d.get("final_consensus"),
        structured_state=_opt(structured_state_from_dict, d.get("structured_state")),
        cost_entries=[_cost_entry(c) for c in d.get("cost_entries", [])],
        cost_summary=_opt(_cost_summary, d.get("cost_summary")),
        metrics=_opt(_metrics, d.get("metrics")),
        abort_reason=_opt(abort_reason_from_dict, d.get("abort_reason")),
        arbiter_decisions=[_arbiter_decision(a) for a in d.get("arbiter_decisions", [])],
    )


# --- Store ---


@dataclasses.dataclass
class SessionListing:
    id: str
    topic: str
    created_at: datetime
    is_complete: bool


class SessionStore:
    """Reads and writes ``<base_dir>/.consensus/<session id>.json``."""

    def __init__(self, base_dir: Path | None = None) -> None:
        self.state_dir = (base_dir or Path.cwd()) / STATE_DIR

    def _path(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}.json"

    def save(self, session: SessionState) -> Path:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(session.id)
        path.write_text(json.dumps(to_jsonable(session), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.debug("Saved session %s to %s", session.id, path)
        return path

    def load(self, session_id: str) -> SessionState | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        return session_from_dict(json.loads(path.read_text(encoding="utf-8")))

    def list_sessions(self) -> list[SessionListing]:
        """Summaries of every stored session, newest first. Unreadable files are skipped."""
        if not self.state_dir.exists():
            return []

        listings = []
        for path in self.state_dir.glob("*.json"):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                listings.append(
                    SessionListing(
                        id=raw["id"],
                        topic=raw["config"]["topic"],
                        created_at=_dt(raw["created_at"]),
                        is_complete=bool(raw.get("is_complete", False)),
                    )
                )
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.debug("Skipping malformed session file %s: %s", path.name, exc)
        return sorted(listings, key=lambda s: s.created_at, reverse=True)

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True


def export_session(session: SessionState) -> str:
    return json.dumps(
        {"version": EXPORT_VERSION, "exported_at": utc_now().isoformat(), "session": to_jsonable(session)},
        indent=2,
        ensure_ascii=False,
    )


def import_session(data: str) -> SessionState:
    parsed = json.loads(data)
    if not isinstance(parsed, dict) or "session" not in parsed:
        raise ValueError("Invalid session export format")
    return session_from_dict(parsed["session"])


def session_summary(session: SessionState) -> str:
    status = "Complete" if session.is_complete else f"In Progress ({session.current_phase.value})"
    return "\n".join([
        f"Session: {session.id}",
        f"Topic: {session.config.topic}",
        f"Status: {status}",
        f"Agents: {len(session.config.agents)}",
        f"Messages: {len(session.messages)}",
        f"Created: {session.created_at:%Y-%m-%d %H:%M:%S}",
        f"Updated: {session.updated_at:%Y-%m-%d %H:%M:%S}",
    ])
