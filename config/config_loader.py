"""Load settings.yaml into typed dataclasses. Checks API keys at startup."""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from consensus.errors import ConfigurationError
from consensus.models import (
    AgentConfig,
    ArbiterConfig,
    DiscussionConfig,
    DiscussionLimits,
    ModeratorConfig,
    Personality,
    Provider,
)

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    provider: Provider
    model: str
    api_key_env: str | None
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class AgentEntry:
    id: str
    model: str                  # key into AppConfig.models
    personality: str            # key into AppConfig.personalities
    name: str | None = None
    temperature: float = 0.7


@dataclass
class ModeratorEntry:
    model: str
    temperature: float = 0.5


@dataclass
class ArbiterEntry:
    model: str
    timeout_sec: int = 120


@dataclass
class TeamConfig:
    """A preset panel: agents plus optional moderator, arbiter, limits and depth."""

    id: str
    name: str
    description: str
    agents: list[str]           # keys into AppConfig.agents
    depth: int | None = None
    algorithm: str | None = None
    moderator: ModeratorEntry | None = None
    arbiter: ArbiterEntry | None = None
    limits: dict = field(default_factory=dict)     # DiscussionLimits field overrides


@dataclass
class DefaultsConfig:
    depth: int
    output_dir: Path
    max_depth: int = 10
    algorithm: str = "sequential"
    speaking_order: str = "round-robin"
    stream: bool = True
    default_agents: list[str] = field(default_factory=list)


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    personalities: dict[str, Personality]
    agents: dict[str, AgentEntry]
    moderator: ModeratorEntry
    arbiter: ArbiterEntry | None = None
    limits: DiscussionLimits = field(default_factory=DiscussionLimits)
    teams: dict[str, TeamConfig] = field(default_factory=dict)
    available_models: set[str] = field(default_factory=set)


def _limit_fields(raw: dict) -> dict:
    """Only the limits present in ``raw``, keyed by DiscussionLimits field."""
    fields = {
        key: raw[key]
        for key in ("max_cost_usd", "max_tokens", "max_blockers", "max_consecutive_disagreements")
        if raw.get(key) is not None
    }
    minutes = raw.get("max_duration_min")
    if minutes is not None:
        fields["max_duration_ms"] = int(minutes * 60 * 1000)
    if "require_human_decision" in raw:
        fields["require_human_decision"] = bool(raw["require_human_decision"])
    return fields


def _moderator_entry(raw: dict) -> ModeratorEntry:
    return ModeratorEntry(model=raw["model"], temperature=float(raw.get("temperature", 0.5)))


def _arbiter_entry(raw: dict) -> ArbiterEntry:
    return ArbiterEntry(model=raw["model"], timeout_sec=int(raw.get("timeout_sec", 120)))


def _team(key: str, raw: dict) -> TeamConfig:
    return TeamConfig(
        id=key,
        name=str(raw.get("name", key)),
        description=str(raw.get("description", "")).strip(),
        agents=[str(a) for a in raw["agents"]],
        depth=int(raw["depth"]) if raw.get("depth") is not None else None,
        algorithm=raw.get("algorithm"),
        moderator=_moderator_entry(raw["moderator"]) if raw.get("moderator") else None,
        arbiter=_arbiter_entry(raw["arbiter"]) if raw.get("arbiter") else None,
        limits=_limit_fields(raw.get("limits") or {}),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load configuration from settings.yaml.

    Raises FileNotFoundError if the settings file is missing.
    Logs missing API keys but does not raise; callers check
    available_models before starting a discussion.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        depth=int(defaults_raw["depth"]),
        max_depth=int(defaults_raw.get("max_depth", 10)),
        output_dir=Path(defaults_raw["output_dir"]),
        algorithm=str(defaults_raw.get("algorithm", "sequential")),
        speaking_order=str(defaults_raw.get("speaking_order", "round-robin")),
        stream=bool(defaults_raw.get("stream", True)),
        default_agents=list(defaults_raw.get("default_agents", [])),
    )

    models: dict[str, ModelConfig] = {}
    available_models: set[str] = set()

    for model_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=model_name,
            provider=Provider(model_raw["provider"]),
            model=model_raw["model"],
            api_key_env=model_raw.get("api_key_env"),
            timeout_sec=int(model_raw.get("timeout_sec", 180)),
            max_tokens=int(model_raw.get("max_tokens", 1024)),
            base_url=model_raw.get("base_url"),
        )
        models[model_name] = model_cfg

        if not model_cfg.api_key_env:
            available_models.add(model_name)
            logger.info("Model available (local): %s", model_name)
        elif os.environ.get(model_cfg.api_key_env, "").strip():
            available_models.add(model_name)
            logger.info("Model available: %s", model_name)
        else:
            logger.info(
                "Model skipped (no API key): %s, set %s in .env",
                model_name,
                model_cfg.api_key_env,
            )

    personalities = {
        key: Personality(
            name=str(p["name"]),
            description=str(p.get("description", "")),
            traits=[str(t) for t in p.get("traits", [])],
            system_prompt_addition=str(p.get("system_prompt_addition", "")),
            tone=str(p.get("tone", "neutral")),
        )
        for key, p in raw.get("personalities", {}).items()
    }

    agents = {
        key: AgentEntry(
            id=str(a.get("id", key)),
            model=a["model"],
            personality=a["personality"],
            name=a.get("name"),
            temperature=float(a.get("temperature", 0.7)),
        )
        for key, a in raw.get("agents", {}).items()
    }

    moderator_raw = raw["moderator"]
    arbiter_raw = raw.get("arbiter")

    return AppConfig(
        defaults=defaults,
        models=models,
        personalities=personalities,
        agents=agents,
        moderator=_moderator_entry(moderator_raw),
        arbiter=_arbiter_entry(arbiter_raw) if arbiter_raw else None,
        limits=DiscussionLimits(**_limit_fields(raw.get("limits") or {})),
        teams={key: _team(key, t) for key, t in (raw.get("teams") or {}).items()},
        available_models=available_models,
    )


def _model(config: AppConfig, key: str) -> ModelConfig:
    try:
        return config.models[key]
    except KeyError:
        raise ConfigurationError(f"Unknown model '{key}'. Valid: {', '.join(sorted(config.models))}") from None


def get_team(config: AppConfig, key: str) -> TeamConfig:
    try:
        return config.teams[key]
    except KeyError:
        valid = ", ".join(sorted(config.teams)) or "none configured"
        raise ConfigurationError(f"Unknown team '{key}'. Valid: {valid}") from None


def team_agent_keys(config: AppConfig, team: str | None, agent_keys: list[str] | None = None) -> list[str]:
    """Panel keys: explicit agents win over the team preset, which wins over defaults."""
    if agent_keys:
        return agent_keys
    if team:
        return get_team(config, team).agents
    return config.defaults.default_agents


def build_discussion_config(
    config: AppConfig,
    topic: str,
    depth: int | None = None,
    agent_keys: list[str] | None = None,
    algorithm: str | None = None,
    speaking_order: str | None = None,
    moderator_model: str | None = None,
    use_arbiter: bool = True,
    team: str | None = None,
) -> DiscussionConfig:
    """Turn settings plus CLI overrides into a DiscussionConfig.

    A team preset supplies agents, depth, algorithm, moderator, arbiter and
    limit overrides; explicit arguments still take precedence.

    Raises:
        ConfigurationError: Unknown team, agent, personality or model key.
    """
    preset = get_team(config, team) if team else None
    keys = team_agent_keys(config, team, agent_keys)
    agents: list[AgentConfig] = []
    for key in keys:
        entry = config.agents.get(key)
        if entry is None:
            raise ConfigurationError(f"Unknown agent '{key}'. Valid: {', '.join(sorted(config.agents))}")
        personality = config.personalities.get(entry.personality)
        if personality is None:
            raise ConfigurationError(f"Agent '{key}' uses unknown personality '{entry.personality}'")
        model = _model(config, entry.model)
        agents.append(
            AgentConfig(
                id=entry.id,
                name=entry.name or personality.name,
                provider=model.provider,
                model=model.model,
                personality=personality,
                api_key_env=model.api_key_env,
                base_url=model.base_url,
                temperature=entry.temperature,
                max_tokens=model.max_tokens,
                timeout_sec=model.timeout_sec,
            )
        )

    moderator_entry = config.moderator
    arbiter_entry = config.arbiter
    limits = config.limits
    if preset is not None:
        moderator_entry = preset.moderator or config.moderator
        arbiter_entry = preset.arbiter
        limits = replace(config.limits, **preset.limits)

    mod = _model(config, moderator_model or moderator_entry.model)
    arbiter = None
    if use_arbiter and arbiter_entry is not None:
        arb = _model(config, arbiter_entry.model)
        arbiter = ArbiterConfig(
            provider=arb.provider,
            model=arb.model,
            api_key_env=arb.api_key_env,
            base_url=arb.base_url,
            timeout_sec=arbiter_entry.timeout_sec,
        )

    return DiscussionConfig(
        topic=topic,
        depth=depth or (preset.depth if preset else None) or config.defaults.depth,
        agents=agents,
        moderator=ModeratorConfig(
            provider=mod.provider,
            model=mod.model,
            api_key_env=mod.api_key_env,
            base_url=mod.base_url,
            temperature=moderator_entry.temperature,
            timeout_sec=mod.timeout_sec,
        ),
        arbiter=arbiter,
        limits=limits,
        algorithm=algorithm or (preset.algorithm if preset else None) or config.defaults.algorithm,
        speaking_order=speaking_order or config.defaults.speaking_order,
    )
