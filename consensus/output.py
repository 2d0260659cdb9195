"""Rich console output and markdown file save for consensus discussions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from consensus.cost_tracker import format_cost
from consensus.events import (
    Abort,
    AgentMessageChunk,
    AgentMessageComplete,
    AgentSkipped,
    AgentSpeaking,
    ArbiterDecided,
    ArbiterInvoked,
    BlockerEscalated,
    BlockerRaised,
    BlockerResolved,
    ConsensusEvent,
    DecisionGateEvaluated,
    ErrorEvent,
    InterruptHard,
    InterruptSoft,
    ModeratorMessageChunk,
    ModeratorMessageComplete,
    ModeratorSpeaking,
    PhaseChange,
    RoundComplete,
)
from consensus.limits import format_abort_reason
from consensus.models import AgentMessage, BlockerStatus, ConsensusOutput, ModeratorMessage

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 50) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len]


def output_filename(topic: str, session_id: str) -> str:
    return f"consensus-{_slug(topic)}-{session_id[:8]}.md"


def _preview(text: str, words: int = 50) -> str:
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


class EventPrinter:
    """Renders engine events to the console as they arrive.

    In streaming mode chunks are printed as they come and the completed
    message only closes the line; otherwise each completed message is shown
    as a panel preview (full text when verbose).
    """

    def __init__(self, out: Console | None = None, verbose: bool = False, streaming: bool = False) -> None:
        self.console = out or console
        self.verbose = verbose
        self.streaming = streaming

    def __call__(self, event: ConsensusEvent) -> None:
        if isinstance(event, PhaseChange):
            label = event.phase.value if event.round <= 0 else f"{event.phase.value} - round {event.round}"
            self.console.print(Rule(f"[bold cyan]{label}[/bold cyan]"))
        elif isinstance(event, AgentSpeaking):
            self.console.print(f"[bold]{event.agent_name}[/bold] is speaking...")
        elif isinstance(event, ModeratorSpeaking):
            self.console.print("[bold magenta]Moderator[/bold magenta] is speaking...")
        elif isinstance(event, (AgentMessageChunk, ModeratorMessageChunk)):
            self.console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, AgentMessageComplete):
            self._print_agent(event.message)
        elif isinstance(event, ModeratorMessageComplete):
            self._print_moderator(event.message)
        elif isinstance(event, AgentSkipped):
            self.console.print(f"[yellow]Skipped {event.agent_name}[/yellow]")
        elif isinstance(event, RoundComplete):
            self.console.print(f"[dim]Round {event.round} complete[/dim]")
        elif isinstance(event, BlockerRaised):
            b = event.blocker
            self.console.print(f"[red]Blocker [{b.severity}/5, confidence {b.confidence}/5][/red] {b.condition}")
        elif isinstance(event, BlockerResolved):
            self.console.print(f"[green]Blocker resolved:[/green] {event.resolution}")
        elif isinstance(event, BlockerEscalated):
            self.console.print(f"[bold red]Blocker escalated:[/bold red] {event.blocker.condition}")
        elif isinstance(event, ArbiterInvoked):
            self.console.print(f"[bold blue]Arbiter invoked:[/bold blue] {event.reason}")
        elif isinstance(event, ArbiterDecided):
            d = event.decision
            self.console.print(f"[blue]Arbiter: {d.decision.value}[/blue] {d.rationale}")
        elif isinstance(event, DecisionGateEvaluated):
            g = event.gate
            self.console.print(
                f"[dim]{g.name}: {g.condition.value} | agreement {g.metrics.agreement_level:.0f}% | "
                f"{format_cost(g.metrics.cost_spent)} / {format_cost(g.metrics.cost_limit)}[/dim]"
            )
        elif isinstance(event, Abort):
            self.console.print(f"[bold red]{format_abort_reason(event.reason)}[/bold red]")
        elif isinstance(event, InterruptSoft):
            self.console.print(f"[yellow]{event.reason}: wrapping up[/yellow]")
        elif isinstance(event, InterruptHard):
            self.console.print(f"[bold yellow]{event.reason}[/bold yellow]")
        elif isinstance(event, ErrorEvent):
            self.console.print(f"[bold red]Error:[/bold red] {event.error}")

    def _print_agent(self, msg: AgentMessage) -> None:
        if self.streaming:
            self.console.print()
            return
        body = msg.content if self.verbose else _preview(msg.content)
        self.console.print(
            Panel(
                body,
                title=f"[bold]{msg.agent_name}[/bold] ({msg.stance.value})",
                subtitle=" | ".join(msg.key_points[:3]) or None,
                border_style="dim",
            )
        )

    def _print_moderator(self, msg: ModeratorMessage) -> None:
        if self.streaming:
            self.console.print()
            return
        body = Markdown(msg.content) if self.verbose else _preview(msg.content)
        self.console.print(Panel(body, title=f"[bold magenta]Moderator[/bold magenta] ({msg.type.value})"))


def print_result(output: ConsensusOutput) -> None:
    """Print the final consensus, agreements and open blockers."""
    summary = output.summary
    session = output.session
    console.print(Rule("[bold green]Consensus[/bold green]"))

    status = "Yes" if summary.consensus_reached else "Partial"
    stats = f"Participants: {summary.participant_count} | Rounds: {summary.round_count} | Consensus: {status}"
    if session.metrics:
        stats += f" | Agreement: {session.metrics.agreement_level * 100:.0f}%"
    if session.cost_summary:
        stats += (
            f" | Cost: {format_cost(session.cost_summary.total_cost)}"
            f" ({session.cost_summary.total_tokens.total_tokens:,} tokens)"
        )
    console.print(Text(stats, style="dim"))

    if summary.final_consensus:
        console.print(Markdown(summary.final_consensus))
    elif session.abort_reason is not None:
        console.print(f"[yellow]{format_abort_reason(session.abort_reason)}[/yellow]")

    for agreement in summary.key_agreements:
        console.print(f"  [green]+[/green] {agreement}")
    for disagreement in summary.remaining_disagreements:
        console.print(f"  [yellow]?[/yellow] {disagreement}")

    state = session.structured_state
    open_blockers = [
        b for b in (state.blockers if state else [])
        if b.status in (BlockerStatus.OPEN, BlockerStatus.DISPUTED)
    ]
    for blocker in open_blockers:
        console.print(f"  [red]![/red] [{blocker.severity}/5] {blocker.condition}")


def generate_markdown(output: ConsensusOutput) -> str:
    """Render the full discussion, costs and blockers as markdown."""
    session = output.session
    summary = output.summary

    lines: list[str] = [
        "---",
        f'session_id: "{session.id}"',
        f'topic: "{_escape_yaml(summary.topic)}"',
        f'created_at: "{session.created_at.isoformat()}"',
        f'completed_at: "{session.updated_at.isoformat()}"',
        f"participants: {summary.participant_count}",
        f"rounds: {summary.round_count}",
        f"consensus_reached: {str(summary.consensus_reached).lower()}",
        "---",
        "",
        f"# Consensus Discussion: {summary.topic}",
        "",
        "## Executive Summary",
        "",
        summary.final_consensus,
        "",
        "## Participants",
        "",
        "| Agent | Personality | Key Contributions |",
        "|-------|-------------|-------------------|",
    ]
    for agent in summary.agent_summaries:
        contributions = "; ".join(agent.key_contributions[:3]) or "N/A"
        lines.append(f"| {agent.agent_name} | {agent.personality} | {contributions} |")
    lines.append("")

    if summary.key_agreements:
        lines += ["## Key Agreements", ""]
        lines += [f"- {a}" for a in summary.key_agreements]
        lines.append("")

    if summary.remaining_disagreements:
        lines += ["## Areas of Disagreement", ""]
        lines += [f"- {d}" for d in summary.remaining_disagreements]
        lines.append("")

    blockers = session.structured_state.blockers if session.structured_state else []
    if blockers:
        lines += ["## Blockers & Concerns", ""]
        open_blockers = [b for b in blockers if b.status in (BlockerStatus.OPEN, BlockerStatus.DISPUTED)]
        escalated = [b for b in blockers if b.status == BlockerStatus.ESCALATED]
        resolved = [b for b in blockers if b.status == BlockerStatus.ADDRESSED]
        if open_blockers:
            lines += ["### Open Blockers", ""]
            for b in open_blockers:
                lines += [
                    f"#### [{b.severity}/5] {b.condition}",
                    "",
                    f"- **Impact:** {b.impact}",
                    f"- **Detection:** {b.detection}",
                    f"- **Mitigation:** {b.mitigation}",
                    f"- **Confidence:** {b.confidence}/5",
                    f"- **Raised by:** {b.raised_by}",
                    "",
                ]
        if escalated:
            lines += ["### Escalated Blockers", ""]
            lines += [f"- {b.condition} (severity {b.severity}/5)" for b in escalated]
            lines.append("")
        if resolved:
            lines += ["### Resolved Blockers", ""]
            lines += [f"- {b.condition}: *{b.resolution or 'Resolved'}*" for b in resolved]
            lines.append("")

    if session.metrics:
        m = session.metrics
        lines += [
            "## Discussion Metrics",
            "",
            f"- **Agreement Level:** {m.agreement_level * 100:.0f}%",
            f"- **Blockers Raised:** {m.blocker_count}",
            f"- **Blockers Resolved:** {m.resolved_blocker_count}",
        ]
        if m.convergence_round:
            lines.append(f"- **Convergence Round:** {m.convergence_round}")
        lines.append("")

    if session.cost_summary:
        cs = session.cost_summary
        lines += [
            "## Cost Summary",
            "",
            f"- **Total Cost:** {format_cost(cs.total_cost)}",
            f"- **Total Tokens:** {cs.total_tokens.total_tokens:,}",
            f"  - Input: {cs.total_tokens.prompt_tokens:,}",
            f"  - Output: {cs.total_tokens.completion_tokens:,}",
            f"- **Avg Cost/Message:** {format_cost(cs.average_cost_per_message)}",
            "",
        ]
        if cs.cost_by_agent:
            names = {e.agent_id: e.agent_name for e in session.cost_entries}
            lines += ["### Cost by Agent", "", "| Agent | Cost |", "|-------|------|"]
            for agent_id, cost in cs.cost_by_agent.items():
                lines.append(f"| {names.get(agent_id, agent_id)} | {format_cost(cost)} |")
            lines.append("")

    lines += ["## Full Transcript", "", "<details>", "<summary>Click to expand full discussion</summary>", ""]
    current_phase = None
    current_round = 0
    for msg in output.transcript:
        if msg.phase != current_phase:
            current_phase = msg.phase
            lines += [f"### Phase: {msg.phase.value}", ""]
        if msg.round != current_round and msg.round > 0:
            current_round = msg.round
            lines += [f"#### Round {msg.round}", ""]

        if isinstance(msg, AgentMessage):
            lines += [f"**{msg.agent_name}** _({msg.stance.value})_:", "", msg.content, ""]
            if msg.key_points:
                lines.append("> **Key Points:**")
                lines += [f"> - {p}" for p in msg.key_points]
                lines.append("")
            if msg.blockers:
                lines.append("> **Blockers Raised:**")
                lines += [f"> - [Severity {b.severity}/5] {b.condition}" for b in msg.blockers]
                lines.append("")
        else:
            lines += [f"**Moderator** _({msg.type.value})_:", "", msg.content, ""]
        lines += ["---", ""]

    lines += [
        "</details>",
        "",
        "---",
        f"*Generated on {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}*",
        "",
    ]
    return "\n".join(lines)


def _escape_yaml(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def save_to_file(output: ConsensusOutput, output_dir: Path) -> Path:
    """Save the discussion as a markdown file.

    Args:
        output: The finished (or aborted) discussion.
        output_dir: Directory to save the file in; created when missing.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / output_filename(output.summary.topic, output.session.id)
    filepath.write_text(generate_markdown(output), encoding="utf-8")
    logger.info("Discussion saved to: %s", filepath)
    return filepath
