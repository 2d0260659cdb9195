"""Integration tests: real API calls, no mocks. Requires .env with keys for 2+ agents and the moderator."""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from config.config_loader import build_discussion_config, load_config
from consensus.engine import ConsensusEngine
from consensus.interrupts import InterruptController
from consensus.models import AgentMessage, Phase
from consensus.output import save_to_file

load_dotenv()

_CONFIG = load_config()
_AGENTS = [key for key, entry in _CONFIG.agents.items() if entry.model in _CONFIG.available_models]

pytestmark = pytest.mark.integration

if len(_AGENTS) < 2 or _CONFIG.moderator.model not in _CONFIG.available_models:
    pytestmark = pytest.mark.skip(reason=f"Need 2+ usable agents and a moderator, found {len(_AGENTS)} agents")


async def test_full_discussion_pipeline(tmp_path: Path):
    """Run a real depth-2 discussion with available providers, verify no crash."""
    config = build_discussion_config(
        _CONFIG,
        "Should a small team use a monorepo or separate repos for a Python microservices project?",
        depth=2,
        agent_keys=_AGENTS[:2],
        use_arbiter=False,
    )
    engine = ConsensusEngine(config, InterruptController())
    await engine.initialize()

    output = await engine.run()

    agent_messages = [m for m in output.transcript if isinstance(m, AgentMessage)]
    assert agent_messages
    assert all(m.content for m in agent_messages)
    assert output.session.is_complete
    assert output.session.current_phase == Phase.CONSENSUS
    assert output.session.cost_summary.total_tokens.total_tokens > 0

    saved = save_to_file(output, tmp_path / "output")
    content = saved.read_text(encoding="utf-8")
    assert "# Consensus Discussion:" in content
    assert "## Cost Summary" in content
