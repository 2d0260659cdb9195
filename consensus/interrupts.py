"""Interrupt controller shared between the caller and a running engine.

The caller owns the controller and passes it to the engine. Hard interrupts
and skip requests are backed by ``asyncio.Event`` so the engine can race them
against an in-flight provider call.
"""

import asyncio
import logging
import signal
from enum import Enum

logger = logging.getLogger(__name__)


class InterruptType(str, Enum):
    NONE = "none"
    SOFT = "soft"       # wrap up: skip remaining discussion rounds
    HARD = "hard"       # stop now


class InterruptController:
    def __init__(self, verbose: bool = True) -> None:
        self.verbose = verbose
        self._state = InterruptType.NONE
        self._hard = asyncio.Event()
        self._skip = asyncio.Event()

    @property
    def state(self) -> InterruptType:
        return self._state

    @property
    def skip_requested(self) -> bool:
        return self._skip.is_set()

    def soft_interrupt(self) -> None:
        if self._state == InterruptType.NONE:
            self._state = InterruptType.SOFT
            logger.info("Soft interrupt requested, wrapping up discussion")

    def hard_interrupt(self) -> None:
        self._state = InterruptType.HARD
        self._hard.set()
        logger.info("Hard interrupt requested, stopping")

    def skip_current_agent(self) -> None:
        self._skip.set()
        logger.info("Skip requested for current turn")

    def clear_skip(self) -> None:
        self._skip.clear()

    def toggle_verbose(self) -> None:
        self.verbose = not self.verbose

    def is_interrupted(self) -> bool:
        return self._state != InterruptType.NONE

    def is_soft_interrupt(self) -> bool:
        return self._state == InterruptType.SOFT

    def is_hard_interrupt(self) -> bool:
        return self._state == InterruptType.HARD

    def reset(self) -> None:
        self._state = InterruptType.NONE
        self._hard.clear()
        self._skip.clear()

    async def wait_hard(self) -> None:
        await self._hard.wait()

    async def wait_skip(self) -> None:
        await self._skip.wait()

    def install_sigint_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        """Map Ctrl+C to a hard interrupt for the lifetime of ``loop``."""
        try:
            loop.add_signal_handler(signal.SIGINT, self.hard_interrupt)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(self.hard_interrupt))
