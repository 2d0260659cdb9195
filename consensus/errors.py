"""Exception hierarchy for the consensus engine.

Resource-limit aborts and human-decision pauses are not exceptions; they are
reported as abort reasons on the session.
"""


class ConsensusError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(ConsensusError):
    """Discussion configuration is unusable (too few agents, missing topic, ...)."""


class UnavailableParticipantsError(ConsensusError):
    """One or more participants failed the liveness check."""

    def __init__(self, names: list[str]) -> None:
        self.names = list(names)
        super().__init__(f"Unavailable participants: {', '.join(self.names)}")


class DiscussionError(ConsensusError):
    """The run failed after initialization and cannot continue."""


class SessionNotFoundError(ConsensusError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")
