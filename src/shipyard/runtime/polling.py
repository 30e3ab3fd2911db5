"""Bounded, fixed-interval polling.

Three places in shipyard wait for something outside the process to become
true: an application container becoming ready, a Postgres container
accepting connections, and a DNS name resolving. All of them use
:func:`poll_until`.

A probe is an async callable receiving the 1-based attempt number. It
returns ``True`` when the target is ready, ``False`` to keep waiting, and
raises to abort early (``ContainerExitedError`` for a dead container).

Cancellation is cooperative: when the ``cancel`` event is set the loop
stops before the next attempt (or during the sleep) with
:class:`PollCancelledError`.

Example::

    await poll_until(
        probe,
        policy=PollPolicy(interval=2.0, max_attempts=60),
        cancel=cancel_event,
        what="container api-main",
    )
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from shipyard.core.errors import HealthTimeoutError, PollCancelledError
from shipyard.core.logging import get_logger

logger = get_logger(__name__)

Probe = Callable[[int], Awaitable[bool]]


@dataclass(frozen=True)
class PollPolicy:
    """Interval in seconds and attempt bound of one polling loop."""

    interval: float = 2.0
    max_attempts: int = 60

    def __post_init__(self) -> None:
        if self.interval < 0:
            raise ValueError("interval must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def budget_seconds(self) -> float:
        return self.interval * self.max_attempts


async def _pause(interval: float, cancel: asyncio.Event | None) -> None:
    if cancel is None:
        await asyncio.sleep(interval)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=interval)
    except TimeoutError:
        pass


async def poll_until(
    probe: Probe,
    *,
    policy: PollPolicy,
    cancel: asyncio.Event | None = None,
    what: str = "resource",
) -> int:
    """Call ``probe`` until it returns True; return the attempt it succeeded on.

    Raises:
        HealthTimeoutError: ``policy.max_attempts`` probes returned False.
        PollCancelledError: ``cancel`` was set between attempts.
        Exception: Whatever the probe raises propagates unchanged.
    """
    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None and cancel.is_set():
            raise PollCancelledError(f"Stopped waiting for {what}: cancelled")
        if await probe(attempt):
            logger.debug("poll.ready", what=what, attempt=attempt)
            return attempt
        if attempt < policy.max_attempts:
            await _pause(policy.interval, cancel)

    raise HealthTimeoutError(
        f"{what} not ready after {policy.max_attempts} attempts "
        f"({policy.budget_seconds:.0f}s)",
        attempts=policy.max_attempts,
    )


__all__ = ["PollPolicy", "Probe", "poll_until"]
