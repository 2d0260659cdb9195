"""Click CLI: loads config, builds the panel, runs or resumes a discussion, saves the output."""

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from config.config_loader import AppConfig, build_discussion_config, load_config, team_agent_keys
from consensus.algorithms import list_algorithms
from consensus.engine import ConsensusEngine
from consensus.errors import ConfigurationError, DiscussionError, SessionNotFoundError, UnavailableParticipantsError
from consensus.interrupts import InterruptController
from consensus.limits import DEFAULT_LIMITS, format_abort_reason, format_limits
from consensus.log import DiscussionLog
from consensus.models import ConsensusOutput, NeedsHuman
from consensus.output import EventPrinter, print_result, save_to_file
from consensus.storage import SessionStore

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _print_health(results: dict[str, tuple[bool, str]]) -> None:
    console.print("\n[bold]Checking participants...[/bold]")
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
    console.print()


def _print_sessions(store: SessionStore) -> None:
    sessions = store.list_sessions()
    if not sessions:
        console.print("No saved sessions.")
        return
    table = Table(title="Saved sessions")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Status")
    table.add_column("Topic")
    for s in sessions:
        table.add_row(
            s.id,
            f"{s.created_at:%Y-%m-%d %H:%M}",
            "complete" if s.is_complete else "in progress",
            s.topic[:60],
        )
    console.print(table)


def _print_algorithms() -> None:
    for algo in list_algorithms():
        console.print(f"[bold]{algo.name}[/bold]: {algo.description}")


def _print_teams(config: AppConfig) -> None:
    if not config.teams:
        console.print("No teams configured.")
        return
    table = Table(title="Teams")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Agents", justify="right")
    table.add_column("Depth", justify="right")
    table.add_column("Description")
    for team in config.teams.values():
        table.add_row(
            team.id,
            team.name,
            str(len(team.agents)),
            str(team.depth or config.defaults.depth),
            team.description.splitlines()[0] if team.description else "",
        )
    console.print(table)
    console.print("[dim]Use a team: consensus \"Your topic\" --team <id>[/dim]")


def _check_available(config: AppConfig, agent_keys: list[str]) -> None:
    """Warn about agents whose model has no API key configured."""
    for key in agent_keys:
        entry = config.agents.get(key)
        if entry is not None and entry.model not in config.available_models:
            console.print(f"[yellow]Warning:[/yellow] agent '{key}' uses '{entry.model}' which has no API key set")


async def _run_engine(
    engine: ConsensusEngine,
    interrupts: InterruptController,
    stream: bool,
    verbose: bool,
    skip_health_check: bool,
) -> ConsensusOutput | None:
    interrupts.install_sigint_handler(asyncio.get_running_loop())

    try:
        await engine.initialize(health_check=not skip_health_check)
    except UnavailableParticipantsError as exc:
        if engine.health_results:
            _print_health(engine.health_results)
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return None
    if engine.health_results:
        _print_health(engine.health_results)

    printer = EventPrinter(console, verbose=verbose, streaming=stream)
    if stream:
        async for event in engine.run_stream():
            printer(event)
        return engine.output

    engine.on(printer)
    try:
        return await engine.run()
    except DiscussionError as exc:
        console.print(f"[bold red]Discussion failed:[/bold red] {exc}")
        return None


def _finish(output: ConsensusOutput | None, output_dir: Path) -> None:
    if output is None:
        sys.exit(1)

    print_result(output)
    saved_path = save_to_file(output, output_dir)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    console.print(f"[dim]Session: {output.session.id}[/dim]")

    if isinstance(output.session.abort_reason, NeedsHuman):
        console.print(
            f"\n[bold yellow]{format_abort_reason(output.session.abort_reason)}[/bold yellow]\n"
            f"Resume with: --resume {output.session.id} --human-decision \"...\""
        )


@click.command()
@click.argument("topic", required=False)
@click.option("--file", "topic_file", type=click.Path(exists=True), help="Read the topic from a text or .md file")
@click.option("--depth", default=None, type=click.IntRange(1, 10), help="Total rounds (default: from config)")
@click.option("--algorithm", default=None, help="Round scheduling algorithm (see --list-algorithms)")
@click.option("--agents", "agents_arg", default=None, help="Comma-separated agent keys from settings.yaml")
@click.option("--team", default=None, help="Preset panel from settings.yaml (see --list-teams)")
@click.option("--moderator", "moderator_model", default=None, help="Model key used by the moderator")
@click.option("--no-arbiter", is_flag=True, default=False, help="Run without the tie-breaking arbiter")
@click.option("--max-cost", default=None, type=float, help="Abort once estimated cost exceeds this (USD)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--stream/--no-stream", default=None, help="Stream model output as it arrives")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging and full message output")
@click.option("--log-file", default=None, type=click.Path(), help="Also write logs to this file")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the participant connectivity check at startup")
@click.option("--resume", "resume_id", default=None, help="Continue a saved session by id")
@click.option("--additional-rounds", default=1, type=click.IntRange(1, 9), show_default=True,
              help="Rounds to add when resuming (total depth is capped at 10)")
@click.option("--human-decision", default=None, help="Decision text that resolves open blockers on resume")
@click.option("--list-sessions", is_flag=True, default=False, help="List saved sessions and exit")
@click.option("--list-algorithms", is_flag=True, default=False, help="List discussion algorithms and exit")
@click.option("--list-teams", is_flag=True, default=False, help="List preset teams and exit")
def main(
    topic: str | None,
    topic_file: str | None,
    depth: int | None,
    algorithm: str | None,
    agents_arg: str | None,
    team: str | None,
    moderator_model: str | None,
    no_arbiter: bool,
    max_cost: float | None,
    output_path: str | None,
    stream: bool | None,
    verbose: bool,
    log_file: str | None,
    skip_health_check: bool,
    resume_id: str | None,
    additional_rounds: int,
    human_decision: str | None,
    list_sessions: bool,
    list_algorithms: bool,
    list_teams: bool,
) -> None:
    """Consensus -- multi-agent moderated discussion toward a consensus.

    \b
    Examples:
      consensus "Should we adopt event sourcing?" --depth 4
      consensus "Monorepo vs polyrepo?" --agents pragmatist,skeptic --algorithm debate
      consensus "Adopt Kubernetes?" --team local-council
      consensus --file topic.md --no-stream
      consensus --list-sessions
      consensus --resume 1a2b3c4d --human-decision "Ship behind a feature flag"
    """
    # Model output may contain characters the Windows console cannot encode
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    log = DiscussionLog()
    log.init(verbose=verbose, log_file=Path(log_file) if log_file else None)

    store = SessionStore()
    if list_sessions:
        _print_sessions(store)
        return
    if list_algorithms:
        _print_algorithms()
        return

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)
    if list_teams:
        _print_teams(config)
        return

    effective_output = Path(output_path) if output_path else config.defaults.output_dir
    effective_stream = stream if stream is not None else config.defaults.stream
    interrupts = InterruptController(verbose=verbose)
    override_limits = {"max_cost_usd": max_cost} if max_cost is not None else None

    try:
        if resume_id:
            previous = store.load(resume_id)
            if previous is None:
                raise SessionNotFoundError(resume_id)
            engine = ConsensusEngine.resume(
                previous,
                additional_rounds,
                interrupts=interrupts,
                human_decision=human_decision,
                override_limits=override_limits,
                log=log,
                store=store,
            )
            console.print(
                f"\n[bold cyan]Resuming[/bold cyan] {resume_id} as {engine.session.id} "
                f"(depth {engine.config.depth})"
            )
        else:
            if topic_file:
                topic_text = Path(topic_file).read_text(encoding="utf-8").strip()
            elif topic:
                topic_text = topic
            else:
                console.print("[bold red]Error:[/bold red] Provide a TOPIC argument, --file, or --resume.")
                sys.exit(1)

            agent_keys = [a.strip() for a in agents_arg.split(",")] if agents_arg else None
            _check_available(config, team_agent_keys(config, team, agent_keys))
            discussion = build_discussion_config(
                config,
                topic_text,
                depth=depth,
                agent_keys=agent_keys,
                algorithm=algorithm,
                moderator_model=moderator_model,
                use_arbiter=not no_arbiter,
                team=team,
            )
            if override_limits:
                discussion.limits = replace(discussion.limits or DEFAULT_LIMITS, **override_limits)
            engine = ConsensusEngine(discussion, interrupts, log=log, store=store)

            names = ", ".join(a.name for a in discussion.agents)
            console.print(
                f"\n[bold cyan]Consensus[/bold cyan] -- {len(discussion.agents)} agents, "
                f"depth {discussion.depth} [{discussion.algorithm}]"
            )
            console.print(f"Panel: {names}")
            console.print(f"Topic: [italic]{topic_text[:80]}{'...' if len(topic_text) > 80 else ''}[/italic]")
            if discussion.limits:
                console.print(f"[dim]{format_limits(discussion.limits)}[/dim]")
    except (ConfigurationError, SessionNotFoundError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    try:
        output = asyncio.run(_run_engine(engine, interrupts, effective_stream, verbose, skip_health_check))
        _finish(output, effective_output)
    finally:
        log.shutdown()


if __name__ == "__main__":
    main()
