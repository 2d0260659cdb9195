"""Participant health checks: ping every agent, the moderator and the arbiter before a run."""

import asyncio
import logging
from typing import Protocol

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 20.0


class Pingable(Protocol):
    async def is_available(self) -> bool: ...


async def _check_one(name: str, participant: Pingable) -> tuple[str, bool, str]:
    """Ping a single participant. Returns (name, ok, error_message)."""
    try:
        ok = await asyncio.wait_for(participant.is_available(), timeout=_TIMEOUT_SEC)
    except TimeoutError:
        return name, False, f"no answer within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        return name, False, str(exc)
    return name, ok, "" if ok else "provider did not respond"


async def run_health_checks(
    participants: dict[str, Pingable],
) -> dict[str, tuple[bool, str]]:
    """Ping all participants in parallel.

    Returns:
        Dict mapping participant name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in participants.items()))
    for name, ok, err in results:
        if not ok:
            logger.warning("Participant unavailable: %s (%s)", name, err)
    return {name: (ok, err) for name, ok, err in results}


def unavailable(results: dict[str, tuple[bool, str]]) -> list[str]:
    return [name for name, (ok, _) in results.items() if not ok]
