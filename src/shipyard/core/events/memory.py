"""
In-memory event bus.

Single-process deployments and the test suite need a bus that delivers
events without external infrastructure. Events are not persisted.

Each subscription owns a delivery queue drained by its own task, so
``publish()`` only enqueues: a slow or stuck handler delays its own
subscription and nothing else. Events reach one handler in publish order.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field

from shipyard.core.events import Event, EventHandler
from shipyard.core.logging import get_logger

__all__ = ["InMemoryEventBus"]

logger = get_logger(__name__)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler
    queue: asyncio.Queue[Event] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None


class InMemoryEventBus:
    """In-process event bus.

    An exception in one handler is logged and does not affect delivery to
    the others. :meth:`drain` waits until every queued event was handled.

    Example::

        bus = InMemoryEventBus()

        async def on_status(event: Event):
            print(event.payload["status"])

        await bus.subscribe("deployment.*", on_status)
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def publish(self, event: Event) -> None:
        """Queue an event for all matching subscribers."""
        if self._closed:
            return

        async with self._lock:
            matching = [sub for sub in self._subscriptions.values() if event.matches(sub.pattern)]

        for sub in matching:
            sub.queue.put_nowait(event)
            if sub.worker is None:
                sub.worker = asyncio.create_task(self._deliver(sub), name=f"events-{sub.id}")

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern; returns the subscription id."""
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        async with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=event_type, handler=handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription; events not yet delivered to it are dropped."""
        async with self._lock:
            sub = self._subscriptions.pop(subscription_id, None)
        if sub is not None:
            await _stop([sub])

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every subscriber has handled the events queued for it.

        Raises:
            TimeoutError: Handlers were still busy after ``timeout`` seconds.
        """
        async with self._lock:
            queues = [sub.queue for sub in self._subscriptions.values()]
        if queues:
            await asyncio.wait_for(asyncio.gather(*(q.join() for q in queues)), timeout=timeout)

    async def close(self) -> None:
        """Mark bus as closed, clear subscriptions and stop their delivery tasks."""
        self._closed = True
        async with self._lock:
            subs = list(self._subscriptions.values())
            self._subscriptions.clear()
        await _stop(subs)

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)

    async def _deliver(self, sub: Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await sub.handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event.event_type,
                    error=str(e),
                )
            finally:
                sub.queue.task_done()


async def _stop(subs: list[Subscription]) -> None:
    workers = [sub.worker for sub in subs if sub.worker is not None]
    for worker in workers:
        worker.cancel()
    if workers:
        await asyncio.gather(*workers, return_exceptions=True)
