"""Per-deployment step logs.

Operators watching a build want the handful of lines that belong to *that*
deployment, not the whole process log. :class:`DeploymentLogStore` keeps
the most recent entries per deployment in memory (bounded per deployment,
expired after a retention window measured from the last entry) and
publishes each entry as a ``deployment.log`` event.

Every entry is also written to the structured process log, so nothing is
lost when the store expires it.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from shipyard.core.events import Event, EventBus
from shipyard.core.logging import get_logger

logger = get_logger(__name__)

MAX_ENTRIES_PER_DEPLOYMENT = 500
RETENTION_SECONDS = 30 * 60


@dataclass
class LogEntry:
    """One step line of a deployment."""

    level: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }


class DeploymentLogStore:
    """Bounded in-memory log buffer keyed by deployment id."""

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        max_entries: int = MAX_ENTRIES_PER_DEPLOYMENT,
        retention_seconds: float = RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bus = bus
        self.max_entries = max_entries
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: dict[str, deque[LogEntry]] = {}
        self._last_write: dict[str, float] = {}

    async def add(self, deployment_id: str, level: str, message: str) -> LogEntry:
        """Record an entry, mirror it to the process log and publish it."""
        self.prune()
        entry = LogEntry(level=level, message=message)
        buffer = self._entries.setdefault(deployment_id, deque(maxlen=self.max_entries))
        buffer.append(entry)
        self._last_write[deployment_id] = self._clock()

        log_method = getattr(logger, level, logger.info)
        log_method("deployment.step", deployment_id=deployment_id, message=message)

        if self.bus is not None:
            await self.bus.publish(
                Event(
                    event_type="deployment.log",
                    source="deploy.logs",
                    payload={"id": deployment_id, **entry.to_dict()},
                    correlation_id=deployment_id,
                )
            )
        return entry

    def get(self, deployment_id: str) -> list[LogEntry]:
        self.prune()
        return list(self._entries.get(deployment_id, ()))

    def clear(self, deployment_id: str) -> None:
        self._entries.pop(deployment_id, None)
        self._last_write.pop(deployment_id, None)

    def active_deployments(self) -> list[str]:
        self.prune()
        return list(self._entries)

    def prune(self) -> int:
        """Drop deployments whose newest entry is older than the retention window."""
        cutoff = self._clock() - self.retention_seconds
        expired = [dep_id for dep_id, ts in self._last_write.items() if ts < cutoff]
        for dep_id in expired:
            self.clear(dep_id)
        return len(expired)


class StepLogger:
    """Binds a log store to one deployment id."""

    def __init__(self, store: DeploymentLogStore | None, deployment_id: str | None) -> None:
        self.store = store
        self.deployment_id = deployment_id

    async def _emit(self, level: str, message: str) -> None:
        if self.store is not None and self.deployment_id is not None:
            await self.store.add(self.deployment_id, level, message)
        else:
            getattr(logger, level)("deployment.step", message=message)

    async def info(self, message: str) -> None:
        await self._emit("info", message)

    async def warning(self, message: str) -> None:
        await self._emit("warning", message)

    async def error(self, message: str) -> None:
        await self._emit("error", message)


__all__ = ["DeploymentLogStore", "LogEntry", "StepLogger"]
