"""Orchestration engine: drives one consensus session through its phases.

OPENING -> DISCUSSION (round plans) -> SYNTHESIS -> CONSENSUS

Both ``run()`` and ``run_stream()`` go through the same event-producing run
loop; ``run()`` only forwards the events to registered handlers and returns
the final output. Provider calls are the only suspension points and each one
is raced against the caller's hard-interrupt and skip signals.
"""

import asyncio
import inspect
import math
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace

from consensus.agent import Agent, TurnChunk
from consensus.algorithms import ContextMode, RoundMode, SummaryMode, create_round_plans
from consensus.arbiter import Arbiter
from consensus.cost_tracker import CostTracker, format_cost
from consensus.errors import ConfigurationError, DiscussionError, UnavailableParticipantsError
from consensus.events import (
    Abort,
    AgentMessageChunk,
    AgentMessageComplete,
    AgentSkipped,
    AgentSpeaking,
    AgentThinking,
    ArbiterDecided,
    ArbiterInvoked,
    BlockerEscalated,
    BlockerRaised,
    BlockerResolved,
    ConsensusEvent,
    ConsensusReached,
    CostUpdate,
    DecisionGateEvaluated,
    ErrorEvent,
    EventHandler,
    InterruptHard,
    InterruptSoft,
    MetricsUpdate,
    ModeratorMessageChunk,
    ModeratorMessageComplete,
    ModeratorSpeaking,
    ModeratorThinking,
    PhaseChange,
    RoundComplete,
    SessionComplete,
    SessionStart,
    StateUpdate,
    WrappingUp,
)
from consensus.healthcheck import run_health_checks, unavailable
from consensus.interrupts import InterruptController
from consensus.limits import DEFAULT_LIMITS, calculate_decision_gate, check_limits, format_abort_reason
from consensus.log import DiscussionLog
from consensus.models import (
    AgentMessage,
    AgentSummary,
    ArbiterVerdict,
    ConsensusMetrics,
    ConsensusOutput,
    ConsensusSummary,
    DiscussionConfig,
    DiscussionLimits,
    Message,
    ModeratorMessage,
    ModeratorMessageType,
    NeedsHuman,
    Phase,
    SessionState,
    Stance,
    TokenUsage,
    UserInterrupt,
    utc_now,
)
from consensus.moderator import Moderator, SummaryChunk
from consensus.parsing import new_id
from consensus.protocol import DiscussionProtocol
from consensus.providers.base import ProviderError
from consensus.providers.factory import create_provider
from consensus.storage import SessionStore
from consensus.structured_state import StructuredStateManager

MIN_AGENTS = 2
MAX_DEPTH = 10
THINKING_INTERVAL_SEC = 5.0
CONSENSUS_THRESHOLD = 0.6

_END = object()


class _TurnSkipped(Exception):
    pass


class _HardStop(Exception):
    pass


async def _anext(iterator: AsyncIterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


@dataclass
class ResumePoint:
    skip_opening: bool = False
    start_round: int = 1
    pending_agent_ids: list[str] | None = None     # only these speak in start_round


def validate_config(config: DiscussionConfig) -> None:
    if not config.topic or not config.topic.strip():
        raise ConfigurationError("Discussion topic is required")
    if len(config.agents) < MIN_AGENTS:
        raise ConfigurationError(f"At least {MIN_AGENTS} agents are required, got {len(config.agents)}")
    if not 1 <= config.depth <= MAX_DEPTH:
        raise ConfigurationError(f"Depth must be between 1 and {MAX_DEPTH}, got {config.depth}")
    ids = [a.id for a in config.agents]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate agent ids: {', '.join(duplicates)}")


def estimate_usage(content: str) -> TokenUsage:
    """Rough token estimate (4 characters per token) when a provider reports none."""
    half = math.ceil(len(content) / 4)
    return TokenUsage(prompt_tokens=half, completion_tokens=half, total_tokens=half * 2)


def _rotate(items: list[str], offset: int) -> list[str]:
    if not items:
        return items
    offset %= len(items)
    return items[offset:] + items[:offset]


class ConsensusEngine:
    def __init__(
        self,
        config: DiscussionConfig,
        interrupts: InterruptController,
        *,
        log: DiscussionLog | None = None,
        store: SessionStore | None = None,
        provider_factory: Callable = create_provider,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        validate_config(config)
        self.config = config
        self.interrupts = interrupts
        self.log = log or DiscussionLog()
        self.logger = self.log.child("engine")
        self.store = store
        self.provider_factory = provider_factory
        self.limits: DiscussionLimits = config.limits or DEFAULT_LIMITS

        self.cost_tracker = cost_tracker or CostTracker()
        self.state_manager = StructuredStateManager(config.topic)
        self.protocol = DiscussionProtocol(config.depth, len(config.agents))

        now = utc_now()
        self.session = SessionState(
            id=new_id(),
            created_at=now,
            updated_at=now,
            config=config,
            structured_state=self.state_manager.state,
            cost_entries=self.cost_tracker.entries(),
            metrics=ConsensusMetrics(),
        )

        self.agents: list[Agent] = []
        self.moderator: Moderator | None = None
        self.arbiter: Arbiter | None = None
        self._handlers: list[EventHandler] = []
        self._resume_point: ResumePoint | None = None
        self._initialized = False
        self._streaming = False
        self._aborted = False
        self._paused = False
        self._consecutive_disagreements = 0
        self._output: ConsensusOutput | None = None
        self.health_results: dict[str, tuple[bool, str]] = {}

        self.logger.debug("Engine created for session %s: %s", self.session.id, config.topic)

    # --- Setup ---

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to events; returns an unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def initialize(self, health_check: bool = True) -> None:
        """Build participants and verify every one of them answers.

        Per-participant results are kept on ``health_results``. With
        ``health_check=False`` the liveness pings are skipped.

        Raises:
            UnavailableParticipantsError: Naming every participant that could
                not be built or did not respond.
        """
        if self._initialized:
            return

        self.logger.info(
            "Initializing discussion: %d agents, depth %d, algorithm %s",
            len(self.config.agents), self.config.depth, self.config.algorithm,
        )
        failed: list[str] = []
        participants = {}
        self.agents = []

        for agent_config in self.config.agents:
            try:
                provider = self.provider_factory(
                    agent_config.provider, agent_config.model,
                    agent_config.api_key_env, agent_config.base_url, agent_config.timeout_sec,
                )
            except (ProviderError, ValueError) as exc:
                self.logger.error("Cannot create provider for %s: %s", agent_config.name, exc)
                failed.append(agent_config.name)
                continue
            agent = Agent(agent_config, provider)
            self.agents.append(agent)
            key = agent.name if agent.name not in participants else f"{agent.name} ({agent.id})"
            participants[key] = agent

        mod = self.config.moderator
        try:
            self.moderator = Moderator(
                mod, self.provider_factory(mod.provider, mod.model, mod.api_key_env, mod.base_url, mod.timeout_sec)
            )
            participants["Moderator"] = self.moderator
        except (ProviderError, ValueError) as exc:
            self.logger.error("Cannot create moderator provider: %s", exc)
            failed.append("Moderator")

        arb = self.config.arbiter
        if arb is not None:
            try:
                self.arbiter = Arbiter(
                    arb, self.provider_factory(arb.provider, arb.model, arb.api_key_env, arb.base_url, arb.timeout_sec)
                )
                participants["Arbiter"] = self.arbiter
            except (ProviderError, ValueError) as exc:
                self.logger.error("Cannot create arbiter provider: %s", exc)
                failed.append("Arbiter")

        if health_check:
            self.health_results = await run_health_checks(participants)
            failed.extend(unavailable(self.health_results))
        if failed:
            self.logger.error("Unavailable participants: %s", ", ".join(failed))
            raise UnavailableParticipantsError(failed)

        self._initialized = True
        self.logger.info("All participants available")

    # --- Public run API ---

    async def run(self) -> ConsensusOutput:
        """Run the whole discussion, forwarding every event to handlers.

        Raises:
            UnavailableParticipantsError: From ``initialize``.
            DiscussionError: The run failed after initialization.
        """
        await self.initialize()
        try:
            async for event in self._drive(streaming=False):
                await self._dispatch(event)
        except Exception as exc:
            self.logger.exception("Discussion failed")
            self._save()
            await self._dispatch(ErrorEvent(str(exc)))
            if isinstance(exc, DiscussionError):
                raise
            raise DiscussionError(str(exc)) from exc
        return self._output

    async def run_stream(self) -> AsyncIterator[ConsensusEvent]:
        """Run the discussion yielding one event per state change.

        Failures after initialization end the stream with a single ``error`` event.
        """
        await self.initialize()
        try:
            async for event in self._drive(streaming=True):
                await self._dispatch(event)
                yield event
        except Exception as exc:
            self.logger.exception("Discussion failed")
            self._save()
            error = ErrorEvent(str(exc))
            await self._dispatch(error)
            yield error

    @property
    def output(self) -> ConsensusOutput | None:
        return self._output

    # --- Run loop ---

    async def _drive(self, streaming: bool) -> AsyncIterator[ConsensusEvent]:
        self._streaming = streaming
        self.protocol.start()
        yield SessionStart(self.session)

        point = self._resume_point or ResumePoint()
        if point.skip_opening:
            self.protocol.advance()
        else:
            async for event in self._opening():
                yield event

        if not self._halted() and not self.interrupts.is_soft_interrupt():
            async for event in self._discussion(point):
                yield event

        if not self._halted() and self.interrupts.is_soft_interrupt():
            self.logger.info("Soft interrupt: skipping to synthesis")
            yield InterruptSoft("User requested wrap-up")
            yield WrappingUp()

        if not self._halted():
            async for event in self._synthesis():
                yield event

        if not self._halted():
            async for event in self._consensus():
                yield event

        if self.interrupts.is_hard_interrupt() and not (self._aborted or self._paused):
            reason = UserInterrupt(interrupt_type="hard")
            self.session.abort_reason = reason
            self.session.final_consensus = self.session.final_consensus or format_abort_reason(reason)
            yield InterruptHard("User requested immediate stop")

        self._output = self._build_output()
        self._save()
        yield SessionComplete(self._output)

    def _halted(self) -> bool:
        return self._aborted or self._paused or self.interrupts.is_hard_interrupt()

    async def _opening(self) -> AsyncIterator[ConsensusEvent]:
        self.session.current_phase = Phase.OPENING
        self.session.current_round = 1
        self.logger.info("Starting OPENING phase")
        yield PhaseChange(Phase.OPENING, 1)

        for event in self._check_limits():
            yield event
        if self._halted():
            return

        async for event in self._moderator_turn(
            self.moderator.introduce(self.config.topic, self.config.agents, self.config.depth)
        ):
            yield event
        if self._halted():
            return

        async for event in self._agent_turns(self.agents, Phase.OPENING, 1):
            yield event
        if self._halted():
            return

        for event in self._update_metrics():
            yield event
        self._save()
        self.protocol.advance()

    async def _discussion(self, point: ResumePoint) -> AsyncIterator[ConsensusEvent]:
        self.session.current_phase = Phase.DISCUSSION
        last_round = self.config.depth - 1
        plans = [
            plan for plan in create_round_plans(
                self.config.depth, point.start_round, len(self.agents), self.config.algorithm
            )
            if plan.round <= last_round
        ]
        by_id = {a.id: a for a in self.agents}

        for plan in plans:
            if self._halted() or self.interrupts.is_soft_interrupt():
                return

            round_num = plan.round
            self.session.current_round = round_num
            self.logger.info("Starting round %d/%d (%s, %s)", round_num, last_round, plan.mode.value, plan.context_mode.value)
            yield PhaseChange(Phase.DISCUSSION, round_num)

            order = DiscussionProtocol.determine_speaking_order(
                list(by_id), self.session.messages, self.config.speaking_order
            )
            speakers = [by_id[agent_id] for agent_id in _rotate(order, plan.rotate_offset)]
            if round_num == point.start_round and point.pending_agent_ids is not None:
                speakers = [a for a in speakers if a.id in point.pending_agent_ids]

            async for event in self._agent_turns(
                speakers,
                Phase.DISCUSSION,
                round_num,
                context_mode=plan.context_mode,
                parallel=plan.mode == RoundMode.PARALLEL,
                summary=self._last_summary(),
                track_disagreements=True,
            ):
                yield event
            if self._halted() or self.interrupts.is_soft_interrupt():
                return

            for event in self._update_metrics():
                yield event
            async for event in self._arbitrate_if_needed():
                yield event

            anonymous = plan.summary_mode == SummaryMode.ANONYMOUS
            if self._streaming:
                source = self.moderator.summarize_round_stream(
                    self.config.topic, self.session.messages, round_num, self.config.depth, anonymous
                )
            else:
                source = self.moderator.summarize_round(
                    self.config.topic, self.session.messages, round_num, self.config.depth, anonymous
                )
            summary = None
            async for event in self._moderator_turn(source):
                if isinstance(event, ModeratorMessageComplete):
                    summary = event.message
                yield event
            if summary is None or self._halted():
                return

            yield RoundComplete(round_num, summary.content)
            yield self._decision_gate()
            self._save()

            for event in self._check_limits():
                yield event
            if self._halted():
                return
            self.protocol.advance()

    async def _synthesis(self) -> AsyncIterator[ConsensusEvent]:
        depth = self.config.depth
        self.session.current_phase = Phase.SYNTHESIS
        self.session.current_round = depth
        self.logger.info("Starting SYNTHESIS phase")
        yield PhaseChange(Phase.SYNTHESIS, depth)

        for event in self._check_limits():
            yield event
        if self._halted():
            return

        async for event in self._moderator_turn(
            self.moderator.transition_phase(
                self.config.topic, self.session.messages, Phase.DISCUSSION, Phase.SYNTHESIS, depth
            )
        ):
            yield event
        if self._halted():
            return

        async for event in self._agent_turns(self.agents, Phase.SYNTHESIS, depth):
            yield event
        if self._halted():
            return

        for event in self._update_metrics():
            yield event
        self._save()
        self.protocol.advance()

    async def _consensus(self) -> AsyncIterator[ConsensusEvent]:
        depth = self.config.depth
        self.session.current_phase = Phase.CONSENSUS
        self.session.current_round = depth
        self.logger.info("Starting CONSENSUS phase")
        yield PhaseChange(Phase.CONSENSUS, depth)

        for event in self._check_limits():
            yield event
        if self._halted():
            return

        conclusion = None
        async for event in self._moderator_turn(
            self.moderator.conclude(self.config.topic, self.session.messages, depth)
        ):
            if isinstance(event, ModeratorMessageComplete):
                conclusion = event.message
            yield event
        if conclusion is None:
            return

        analysis = DiscussionProtocol.analyze_consensus(self.session.messages)
        self.session.consensus_reached = analysis.agreement_level > CONSENSUS_THRESHOLD
        self.session.final_consensus = conclusion.content
        self.session.is_complete = True
        self._save()
        yield ConsensusReached(conclusion.content)

    # --- Turns ---

    async def _agent_turns(
        self,
        agents: list[Agent],
        phase: Phase,
        round_num: int,
        *,
        context_mode: ContextMode = ContextMode.FULL,
        parallel: bool = False,
        summary: str | None = None,
        track_disagreements: bool = False,
    ) -> AsyncIterator[ConsensusEvent]:
        """Run one turn per agent. In a parallel round every agent sees the round-start transcript."""
        snapshot = None
        if parallel:
            snapshot = [
                m for m in self.session.messages
                if not (isinstance(m, AgentMessage) and m.phase == phase and m.round == round_num)
            ]
        attempted = failed = 0

        for agent in agents:
            if self._halted():
                return
            if phase == Phase.DISCUSSION and self.interrupts.is_soft_interrupt():
                return

            for event in self._check_limits():
                yield event
            if self._halted():
                return

            attempted += 1
            transcript = snapshot if snapshot is not None else self.session.messages
            try:
                async for event in self._agent_turn(
                    agent, phase, round_num, transcript, summary, context_mode, track_disagreements
                ):
                    yield event
            except ProviderError as exc:
                failed += 1
                self.logger.warning("%s failed its %s turn: %s", agent.name, phase.value, exc)
                yield ErrorEvent(f"{agent.name}: {exc}")
                yield AgentSkipped(agent.id, agent.name)

        if attempted and failed == attempted:
            raise DiscussionError(f"Every agent failed in {phase.value} round {round_num}")

    async def _agent_turn(
        self,
        agent: Agent,
        phase: Phase,
        round_num: int,
        transcript: list[Message],
        summary: str | None,
        context_mode: ContextMode,
        track_disagreements: bool,
    ) -> AsyncIterator[ConsensusEvent]:
        self.logger.info("Waiting for %s (%s:%s)", agent.name, agent.config.provider.value, agent.config.model)
        yield AgentSpeaking(agent.id, agent.name)

        args = (self.config.topic, self.config.depth, round_num, phase, transcript, summary, context_mode)
        source = agent.respond_stream(*args) if self._streaming else agent.respond(*args)

        message: AgentMessage | None = None
        try:
            async for item in self._guarded(
                source, lambda ms: AgentThinking(agent.id, agent.name, ms), skippable=True
            ):
                if isinstance(item, TurnChunk):
                    if item.content and self._streaming:
                        yield AgentMessageChunk(agent.id, item.content)
                    if item.message is not None:
                        message = item.message
                elif isinstance(item, AgentMessage):
                    message = item
                else:
                    yield item
        except _TurnSkipped:
            self.logger.info("%s skipped by user", agent.name)
            yield AgentSkipped(agent.id, agent.name)
            return
        except _HardStop:
            return

        if message is None:
            raise ProviderError(agent.config.provider.value, "response ended without content")

        self._add_message(message)
        self.protocol.record_agent_message()
        yield AgentMessageComplete(message)

        for event in self._finalize_agent_message(agent, message, track_disagreements):
            yield event
        for event in self._check_limits():
            yield event

    async def _moderator_turn(self, source) -> AsyncIterator[ConsensusEvent]:
        """Run one moderator call. Moderator failures are terminal for the run."""
        yield ModeratorSpeaking()
        message: ModeratorMessage | None = None
        try:
            async for item in self._guarded(source, ModeratorThinking, skippable=False):
                if isinstance(item, SummaryChunk):
                    if item.content and self._streaming:
                        yield ModeratorMessageChunk(item.content)
                    if item.message is not None:
                        message = item.message
                elif isinstance(item, ModeratorMessage):
                    message = item
                else:
                    yield item
        except _HardStop:
            return

        if message is None:
            raise ProviderError("moderator", "response ended without content")

        self._add_message(message)
        yield ModeratorMessageComplete(message)
        for event in self._record_cost(
            "moderator", "Moderator", self.config.moderator.provider.value, self.config.moderator.model,
            message.token_usage or estimate_usage(message.content),
        ):
            yield event
        self._save()
        for event in self._check_limits():
            yield event

    async def _guarded(self, source, thinking: Callable[[int], ConsensusEvent], skippable: bool):
        """Iterate a provider call while watching for hard interrupts and skips.

        ``source`` is an async iterator of chunks or a single awaitable. Yields
        the chunks (or the awaited result), plus a thinking event every
        THINKING_INTERVAL_SEC while nothing arrives. Raises _HardStop or
        _TurnSkipped after cancelling the in-flight call.
        """
        call = None
        if inspect.isawaitable(source):
            call = source

            async def one_shot():
                yield await call

            source = one_shot()

        iterator = source.__aiter__()
        hard = asyncio.ensure_future(self.interrupts.wait_hard())
        watchers = {hard}
        skip = None
        if skippable:
            skip = asyncio.ensure_future(self.interrupts.wait_skip())
            watchers.add(skip)
        started = time.monotonic()

        try:
            while True:
                pending = asyncio.ensure_future(_anext(iterator))
                while True:
                    done, _ = await asyncio.wait(
                        {pending, *watchers}, timeout=THINKING_INTERVAL_SEC, return_when=asyncio.FIRST_COMPLETED
                    )
                    if hard in done:
                        await self._cancel(pending)
                        raise _HardStop()
                    if skip is not None and skip in done:
                        await self._cancel(pending)
                        self.interrupts.clear_skip()
                        raise _TurnSkipped()
                    if pending in done:
                        break
                    yield thinking(int((time.monotonic() - started) * 1000))

                item = pending.result()
                if item is _END:
                    return
                yield item
        finally:
            for watcher in watchers:
                watcher.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)
            if hasattr(iterator, "aclose"):
                await iterator.aclose()
            if inspect.iscoroutine(call):
                call.close()     # never started when cancelled early

    @staticmethod
    async def _cancel(task: asyncio.Future) -> None:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # --- Per-turn bookkeeping ---

    def _add_message(self, message: Message) -> None:
        self.session.messages.append(message)
        self.session.updated_at = utc_now()

    def _record_cost(
        self, agent_id: str, agent_name: str, provider: str, model: str, usage: TokenUsage
    ) -> list[ConsensusEvent]:
        entry = self.cost_tracker.record(
            agent_id, agent_name, provider, model, usage, self.session.current_phase, self.session.current_round
        )
        self.session.cost_entries = self.cost_tracker.entries()
        self.session.cost_summary = self.cost_tracker.summary()
        total = self.cost_tracker.total_cost()
        self.logger.debug("Cost %s for %s, total %s", format_cost(entry.estimated_cost), agent_name, format_cost(total))
        return [CostUpdate(entry, total)]

    def _finalize_agent_message(
        self, agent: Agent, message: AgentMessage, track_disagreements: bool
    ) -> list[ConsensusEvent]:
        events = self._record_cost(
            agent.id, agent.name, agent.config.provider.value, agent.config.model,
            message.token_usage or estimate_usage(message.content),
        )

        for blocker in self.state_manager.process_agent_message(message):
            self.logger.info(
                "Blocker raised by %s (severity %d, confidence %d): %s",
                agent.name, blocker.severity, blocker.confidence, blocker.condition[:50],
            )
            events.append(BlockerRaised(blocker))

        if track_disagreements:
            self._track_disagreements(message)

        self.session.structured_state = self.state_manager.state
        self._save()
        return events

    def _track_disagreements(self, message: AgentMessage) -> None:
        if message.stance in (Stance.DISAGREE, Stance.CHALLENGE):
            self._consecutive_disagreements += 1
            if self._consecutive_disagreements >= self._max_disagreements() and self.arbiter is not None:
                self.logger.warning(
                    "%d consecutive disagreements, arbitration due", self._consecutive_disagreements
                )
        elif message.stance in (Stance.AGREE, Stance.PROPOSE):
            self._consecutive_disagreements = 0

    def _max_disagreements(self) -> int:
        return self.limits.max_consecutive_disagreements or DEFAULT_LIMITS.max_consecutive_disagreements

    def _check_limits(self) -> list[ConsensusEvent]:
        if self._aborted or self._paused:
            return []
        reason = check_limits(self.limits, self.cost_tracker, self.state_manager.open_blockers())
        if reason is None:
            return []

        self.session.abort_reason = reason
        if isinstance(reason, NeedsHuman):
            self._paused = True
            self.logger.warning("Discussion paused: %d critical blocker(s) need a human decision", len(reason.blockers))
        else:
            self._aborted = True
            self.session.final_consensus = self.session.final_consensus or format_abort_reason(reason)
            self.logger.warning("Abort triggered: %s", reason.type)
        self._save()
        return [Abort(reason)]

    def _update_metrics(self) -> list[ConsensusEvent]:
        metrics = self.state_manager.calculate_metrics(len(self.agents))
        self.session.metrics = metrics
        self.session.structured_state = self.state_manager.state
        return [MetricsUpdate(metrics), StateUpdate(self.state_manager.state)]

    def _decision_gate(self) -> DecisionGateEvaluated:
        metrics = self.session.metrics or self.state_manager.calculate_metrics(len(self.agents))
        gate = calculate_decision_gate(metrics, self.cost_tracker, self.limits, self.state_manager.open_blockers())
        self.logger.info(
            "Decision gate: %s (agreement %.0f%%, cost $%.4f)",
            gate.condition.value, gate.metrics.agreement_level, gate.metrics.cost_spent,
        )
        return DecisionGateEvaluated(gate)

    def _last_summary(self) -> str | None:
        for msg in reversed(self.session.messages):
            if isinstance(msg, ModeratorMessage) and msg.type == ModeratorMessageType.SUMMARY:
                return msg.content
        return None

    async def _arbitrate_if_needed(self) -> AsyncIterator[ConsensusEvent]:
        if self.arbiter is None:
            return

        state = self.state_manager.state
        stalled = self._consecutive_disagreements >= self._max_disagreements()
        if not (stalled or Arbiter.needs_arbitration(state)):
            return

        reason = "Consecutive disagreements" if stalled else "Deadlock detected"
        self.logger.info("Invoking arbiter: %s", reason)
        yield ArbiterInvoked(reason)

        for blocker in self.state_manager.critical_blockers():
            if self._halted():
                return
            decision = await self.arbiter.resolve_blocker(blocker, state)
            for event in self._record_arbiter_cost():
                yield event

            if decision.decision == ArbiterVerdict.ACCEPT:
                self.state_manager.escalate_blocker(blocker.id)
                yield BlockerEscalated(blocker)
            else:
                resolution = decision.merged_resolution or decision.rationale
                self.state_manager.resolve_blocker(blocker.id, resolution)
                yield BlockerResolved(blocker.id, resolution)

            self.session.arbiter_decisions.append(decision)
            yield ArbiterDecided(decision)

        tied = self._tied_leaders()
        if len(tied) >= 2 and not self._halted():
            result = await self.arbiter.resolve_deadlock(tied, state)
            for event in self._record_arbiter_cost():
                yield event
            winner = self.state_manager.find_option(result.winner_id)
            if winner is not None:
                self.state_manager.add_decision(winner.proposal, result.rationale, list(winner.supporters))

        self._consecutive_disagreements = 0
        self.session.structured_state = self.state_manager.state
        yield StateUpdate(self.state_manager.state)

    def _tied_leaders(self):
        supported = [o for o in self.state_manager.state.options if o.supporters]
        if len(supported) < 2:
            return []
        top = max(len(o.supporters) for o in supported)
        return [o for o in supported if len(o.supporters) == top]

    def _record_arbiter_cost(self) -> list[ConsensusEvent]:
        usage = self.arbiter.last_usage
        if usage is None:
            return []
        arb = self.config.arbiter
        return self._record_cost("arbiter", "Arbiter", arb.provider.value, arb.model, usage)

    def _save(self) -> None:
        """Autosave the session; failures are logged and tolerated."""
        if self.store is None:
            return
        self.session.structured_state = self.state_manager.state
        self.session.cost_entries = self.cost_tracker.entries()
        try:
            self.store.save(self.session)
        except (OSError, TypeError, ValueError) as exc:
            self.logger.error("Failed to save session %s: %s", self.session.id, exc)

    def _build_output(self) -> ConsensusOutput:
        agent_messages = [m for m in self.session.messages if isinstance(m, AgentMessage)]
        analysis = DiscussionProtocol.analyze_consensus(self.session.messages)

        self.session.cost_entries = self.cost_tracker.entries()
        self.session.cost_summary = self.cost_tracker.summary()
        self.session.structured_state = self.state_manager.state
        self.session.metrics = self.state_manager.calculate_metrics(len(self.agents))

        self.logger.info(
            "Discussion finished: cost %s, %d tokens, agreement %.0f%%",
            format_cost(self.cost_tracker.total_cost()),
            self.cost_tracker.total_tokens().total_tokens,
            self.session.metrics.agreement_level * 100,
        )

        agent_configs = self.config.agents
        return ConsensusOutput(
            session=self.session,
            summary=ConsensusSummary(
                topic=self.config.topic,
                participant_count=len(agent_configs),
                round_count=self.config.depth,
                consensus_reached=self.session.consensus_reached,
                final_consensus=self.session.final_consensus or "",
                key_agreements=analysis.key_agreements,
                remaining_disagreements=analysis.key_disagreements,
                agent_summaries=[
                    AgentSummary(
                        agent_name=cfg.name,
                        personality=cfg.personality.name,
                        key_contributions=[
                            point for m in agent_messages if m.agent_id == cfg.id for point in m.key_points
                        ][:5],
                    )
                    for cfg in agent_configs
                ],
            ),
            transcript=self.session.messages,
        )

    async def _dispatch(self, event: ConsensusEvent) -> None:
        for handler in list(self._handlers):
            result = handler(event)
            if inspect.isawaitable(result):
                await result

    # --- Resume ---

    @classmethod
    def resume(
        cls,
        previous: SessionState,
        additional_rounds: int = 1,
        *,
        interrupts: InterruptController,
        human_decision: str | None = None,
        resolve_blockers: str | list[str] = "all",
        override_limits: dict | None = None,
        log: DiscussionLog | None = None,
        store: SessionStore | None = None,
        provider_factory: Callable = create_provider,
    ) -> "ConsensusEngine":
        """Continue a saved session under a fresh session id.

        The new depth is the old depth plus ``additional_rounds``, capped at
        MAX_DEPTH. Structured state and costs come from the snapshot when
        present. A human decision resolves the selected open blockers
        (``"all"`` or a list of ids), records a decision supported by
        ``human`` and adds a moderator summary carrying the decision text.
        """
        old = previous.config
        depth = min(old.depth + additional_rounds, MAX_DEPTH)
        limits = old.limits
        if override_limits:
            limits = replace(limits or DEFAULT_LIMITS, **override_limits)
        config = replace(
            old,
            depth=depth,
            limits=limits,
            continue_from_session=previous.id,
        )
        engine = cls(config, interrupts, log=log, store=store, provider_factory=provider_factory)
        if depth < old.depth + additional_rounds:
            engine.logger.warning(
                "Depth capped at %d: %d additional rounds requested on a depth-%d session",
                MAX_DEPTH, additional_rounds, old.depth,
            )

        trim = previous.is_complete or previous.current_phase == Phase.CONSENSUS
        messages = [
            m for m in previous.messages
            if not (trim and m.phase in (Phase.SYNTHESIS, Phase.CONSENSUS))
        ]
        point = resume_point(messages, [a.id for a in config.agents])
        engine._resume_point = point

        if previous.structured_state is not None:
            engine.state_manager = StructuredStateManager.from_state(previous.structured_state)
        else:
            engine.state_manager = StructuredStateManager.from_messages(config.topic, messages)
        if previous.cost_entries:
            engine.cost_tracker = CostTracker.from_entries(previous.cost_entries)

        phase = Phase.DISCUSSION if point.skip_opening else Phase.OPENING
        round_num = point.start_round if point.skip_opening else 1
        engine.session = replace(
            previous,
            id=new_id(),
            created_at=utc_now(),
            updated_at=utc_now(),
            config=config,
            current_phase=phase,
            current_round=round_num,
            messages=messages,
            is_complete=False,
            consensus_reached=False,
            final_consensus=None,
            abort_reason=None,
            structured_state=engine.state_manager.state,
            cost_entries=engine.cost_tracker.entries(),
            arbiter_decisions=list(previous.arbiter_decisions),
        )

        decision_text = (human_decision or "").strip()
        if decision_text:
            targets = (
                [b.id for b in engine.state_manager.open_blockers()]
                if resolve_blockers == "all" else list(resolve_blockers)
            )
            for blocker_id in targets:
                engine.state_manager.resolve_blocker(blocker_id, decision_text)
            engine.state_manager.add_decision("Human decision", decision_text, ["human"])
            # Stamped on the last completed round so resume_point never treats it as closing the next one
            completed = point.start_round - 1 if point.skip_opening else 0
            engine.session.messages.append(
                ModeratorMessage(
                    id=new_id(),
                    timestamp=utc_now(),
                    phase=Phase.DISCUSSION if completed else Phase.OPENING,
                    round=completed,
                    type=ModeratorMessageType.SUMMARY,
                    content=f"Human decision applied:\n{decision_text}",
                )
            )

        engine.logger.info(
            "Resuming session %s as %s at %s round %d (depth %d)",
            previous.id, engine.session.id, phase.value, round_num, config.depth,
        )
        return engine


def resume_point(messages: list[Message], agent_ids: list[str]) -> ResumePoint:
    """Where a resumed run starts.

    The last discussion round without a moderator summary is re-entered with
    only the agents that have not spoken in it; otherwise the round after the
    last summarized one. With no opening turns at all, OPENING is rerun.
    """
    has_opening = any(isinstance(m, AgentMessage) and m.phase == Phase.OPENING for m in messages)
    if not has_opening:
        return ResumePoint()

    discussion = [m for m in messages if m.phase == Phase.DISCUSSION and m.round > 0]
    summarized = {
        m.round for m in discussion
        if isinstance(m, ModeratorMessage) and m.type == ModeratorMessageType.SUMMARY
    }
    last_round = max((m.round for m in discussion), default=0)

    if last_round and last_round not in summarized:
        spoken = {m.agent_id for m in discussion if isinstance(m, AgentMessage) and m.round == last_round}
        return ResumePoint(
            skip_opening=True,
            start_round=last_round,
            pending_agent_ids=[a for a in agent_ids if a not in spoken],
        )
    return ResumePoint(skip_opening=True, start_round=last_round + 1)
