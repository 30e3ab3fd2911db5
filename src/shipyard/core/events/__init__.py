"""
Event bus for status and log notifications.

The deployment scheduler writes ``deployment.status`` and
``deployment.log`` events to an :class:`EventBus`; whatever real-time
transport the outer layer uses (websockets, SSE, a message broker)
subscribes to it. Publishing never blocks on, or fails because of, a
subscriber.

Event types emitted by shipyard:

    deployment.status   {id, project, branch, status, domain, port, error, certificate_state}
    deployment.log      {id, level, message, timestamp}
    database.status     {id, name, environment, status}

Tags:
    events, pubsub, notifications, asyncio
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable


@dataclass
class Event:
    """Event payload.

    Attributes:
        event_type: Dot-separated type (e.g., ``deployment.status``)
        source: Origin component
        payload: Event-specific data
        timestamp: When the event occurred (UTC)
        correlation_id: Optional ID linking related events (deployment id)
        event_id: Unique event identifier
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if event type matches a pattern (``*`` and ``prefix.*`` supported)."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return self.event_type.startswith(prefix + ".")
        return self.event_type == pattern


EventHandler = Callable[[Event], Awaitable[None]]


@runtime_checkable
class EventBus(Protocol):
    """Publish/subscribe contract with wildcard patterns."""

    async def publish(self, event: Event) -> None: ...

    async def subscribe(self, event_type: str, handler: EventHandler) -> str: ...

    async def unsubscribe(self, subscription_id: str) -> None: ...

    async def drain(self, timeout: float | None = None) -> None: ...

    async def close(self) -> None: ...


__all__ = ["Event", "EventBus", "EventHandler"]
