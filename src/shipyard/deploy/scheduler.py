"""Bounded-concurrency deployment queue.

:class:`DeploymentQueue` is the single owner of in-flight deployment state.
``enqueue()`` records the request as ``queued`` and returns at once; a
scheduling pass then promotes pending records to ``building`` while fewer
than ``capacity`` deployments are active, dispatching each as an asyncio
task. When a task finishes the counter drops and the pass runs again.

Rules of a scheduling pass:

- FIFO over the pending list; no priorities, no preemption.
- A record whose (project slug, branch) is already building is skipped
  until the in-flight one is terminal. Two builds of one branch never race for
  the same container name.
- ``active_count`` never exceeds ``capacity``.

Failure semantics: any lifecycle or reverse-proxy error marks the record
``failed`` with the error message. Nothing is retried. Certificate
problems are reported on the record but leave it ``success``.

Every transition is saved to the :class:`~shipyard.deploy.store.DeploymentStore`
and published as a ``deployment.status`` event; publishing only queues the
event for delivery. Only the newest ``max_finished`` terminal records stay
in memory; older ones are served from the store by
:meth:`DeploymentQueue.fetch`.

Example::

    queue = DeploymentQueue(lifecycle, network, capacity=3)
    deployment_id = await queue.enqueue(request)
    record = await queue.wait(deployment_id)
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from shipyard.core.errors import NotFoundError, PollCancelledError, ShipyardError
from shipyard.core.events import Event, EventBus
from shipyard.core.logging import LogContext, get_logger
from shipyard.deploy.lifecycle import ContainerLifecycleManager
from shipyard.deploy.logs import DeploymentLogStore, StepLogger
from shipyard.deploy.models import DeploymentRecord, DeploymentRequest, DeploymentStatus
from shipyard.deploy.naming import project_slug
from shipyard.deploy.store import DeploymentStore, InMemoryDeploymentStore
from shipyard.network.provisioner import NetworkProvisioner

logger = get_logger(__name__)

CANCELLED_MESSAGE = "cancelled"


@dataclass
class QueueStatus:
    """Snapshot of the queue."""

    pending: list[DeploymentRecord] = field(default_factory=list)
    building: list[DeploymentRecord] = field(default_factory=list)
    active_count: int = 0
    capacity: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": [r.status_payload() for r in self.pending],
            "building": [r.status_payload() for r in self.building],
            "active_count": self.active_count,
            "capacity": self.capacity,
        }


class DeploymentQueue:
    """FIFO queue with a fixed number of worker slots.

    Parameters
    ----------
    lifecycle
        Builds and starts containers.
    network
        Makes a started container publicly reachable.
    capacity
        Maximum number of deployments building at once.
    store
        Receives every record transition.
    bus
        Receives ``deployment.status`` events.
    logs
        Per-deployment step log buffer.
    max_finished
        Terminal records kept in memory after completion.
    """

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        network: NetworkProvisioner,
        *,
        capacity: int = 3,
        store: DeploymentStore | None = None,
        bus: EventBus | None = None,
        logs: DeploymentLogStore | None = None,
        max_finished: int = 500,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if max_finished < 0:
            raise ValueError("max_finished must be >= 0")
        self.lifecycle = lifecycle
        self.network = network
        self.capacity = capacity
        self.store = store or InMemoryDeploymentStore()
        self.bus = bus
        self.logs = logs or DeploymentLogStore(bus)
        self.max_finished = max_finished

        self._pending: list[DeploymentRecord] = []
        self._building: dict[str, DeploymentRecord] = {}
        self._building_keys: set[tuple[str, str]] = set()
        self._records: dict[str, DeploymentRecord] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._cancel: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._finished: deque[str] = deque()
        self._active = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, request: DeploymentRequest) -> str:
        """Queue ``request`` and return its id without waiting for the build."""
        if self._closed:
            raise ShipyardError("Deployment queue is shut down")
        record = DeploymentRecord(request=request)
        self._records[record.id] = record
        self._done[record.id] = asyncio.Event()
        self._pending.append(record)
        logger.info(
            "deployment.queued",
            deployment_id=record.id,
            project=request.project_name,
            branch=request.branch,
            commit=request.commit,
            pending=len(self._pending),
        )
        await self._persist(record)
        self._schedule()
        return record.id

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending=[r.model_copy(deep=True) for r in self._pending],
            building=[r.model_copy(deep=True) for r in self._building.values()],
            active_count=self._active,
            capacity=self.capacity,
        )

    def get(self, deployment_id: str) -> DeploymentRecord:
        """Current state of a deployment still held in memory."""
        record = self._records.get(deployment_id)
        if record is None:
            raise NotFoundError(f"Unknown deployment: {deployment_id}").with_context(
                deployment_id=deployment_id
            )
        return record.model_copy(deep=True)

    async def wait(self, deployment_id: str, timeout: float | None = None) -> DeploymentRecord:
        """Block until the deployment is ``success`` or ``failed``.

        Records already evicted from memory are returned from the store.
        """
        done = self._done.get(deployment_id)
        if done is None:
            record = await self.store.get(deployment_id)
            if record is None or not record.status.is_terminal:
                raise NotFoundError(f"Unknown deployment: {deployment_id}").with_context(
                    deployment_id=deployment_id
                )
            return record
        await asyncio.wait_for(done.wait(), timeout=timeout)
        return await self.fetch(deployment_id)

    async def fetch(self, deployment_id: str) -> DeploymentRecord:
        """Like :meth:`get`, falling back to the store for evicted records."""
        if deployment_id in self._records:
            return self.get(deployment_id)
        record = await self.store.get(deployment_id)
        if record is None:
            raise NotFoundError(f"Unknown deployment: {deployment_id}").with_context(
                deployment_id=deployment_id
            )
        return record

    def is_building(self, project: str, branch: str) -> bool:
        return (project_slug(project), branch) in self._building_keys

    async def cancel(self, deployment_id: str) -> bool:
        """Cancel a deployment.

        A queued record is removed and failed immediately. A building one
        is asked to stop; it fails with ``cancelled`` at its next
        cancellation point (between steps or poll attempts). Returns False
        for terminal or unknown deployments.
        """
        record = self._records.get(deployment_id)
        if record is None or record.status.is_terminal:
            return False
        if record in self._pending:
            self._pending.remove(record)
            record.mark_failed(CANCELLED_MESSAGE)
            logger.info("deployment.cancelled", deployment_id=deployment_id, stage="queued")
            await self._persist(record)
            self._finish(record)
            return True
        self._cancel.setdefault(deployment_id, asyncio.Event()).set()
        logger.info("deployment.cancel_requested", deployment_id=deployment_id, stage="building")
        return True

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting work, cancel everything and wait for in-flight tasks.

        Building deployments are cancelled cooperatively; after ``timeout``
        seconds any task still running is cancelled outright.
        """
        self._closed = True
        for record in list(self._pending):
            await self.cancel(record.id)
        for deployment_id in list(self._building):
            self._cancel.setdefault(deployment_id, asyncio.Event()).set()
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("deployment_queue.shutdown", cancelled=len(tasks))

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _next_runnable(self) -> DeploymentRecord | None:
        for record in self._pending:
            if record.request.key not in self._building_keys:
                return record
        return None

    def _schedule(self) -> None:
        while self._active < self.capacity:
            record = self._next_runnable()
            if record is None:
                break
            self._pending.remove(record)
            self._active += 1
            self._building_keys.add(record.request.key)
            self._building[record.id] = record
            record.mark_building()
            self._tasks[record.id] = asyncio.create_task(
                self._run(record), name=f"deploy-{record.id}"
            )
        if self._pending and self._active >= self.capacity:
            logger.debug("deployment_queue.at_capacity", capacity=self.capacity, pending=len(self._pending))

    async def _run(self, record: DeploymentRecord) -> None:
        request = record.request
        cancel = self._cancel.setdefault(record.id, asyncio.Event())
        steps = StepLogger(self.logs, record.id)
        try:
            async with LogContext(deployment_id=record.id, project=request.project_name, branch=request.branch):
                await self._persist(record)
                await steps.info(f"Starting deployment {record.id}")
                container = await self.lifecycle.deploy_container(request, cancel=cancel, steps=steps)
                domain = self.lifecycle.naming.domain(request.project_name, request.branch)
                binding = await self.network.provision(
                    domain, container.host_port, container.name, steps=steps, cancel=cancel
                )
                record.mark_success(container, binding)
                await steps.info(f"Deployment successful: {binding.url}")
        except PollCancelledError:
            record.mark_failed(CANCELLED_MESSAGE)
            await steps.warning("Deployment cancelled")
        except ShipyardError as exc:
            record.mark_failed(exc.message)
            logger.error("deployment.failed", deployment_id=record.id, **exc.to_dict())
            await steps.error(f"Deployment failed: {exc.message}")
        except asyncio.CancelledError:
            record.mark_failed(CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            record.mark_failed(str(exc) or exc.__class__.__name__)
            logger.exception("deployment.crashed", deployment_id=record.id)
        finally:
            self._building.pop(record.id, None)
            self._building_keys.discard(request.key)
            self._tasks.pop(record.id, None)
            self._cancel.pop(record.id, None)
            self._active -= 1
            try:
                await self._persist(record)
            finally:
                self._finish(record)
                if record.status == DeploymentStatus.SUCCESS:
                    logger.info("deployment.succeeded", deployment_id=record.id, domain=record.domain)
                if not self._closed:
                    self._schedule()

    def _finish(self, record: DeploymentRecord) -> None:
        self._done[record.id].set()
        self._finished.append(record.id)
        while len(self._finished) > self.max_finished:
            evicted = self._finished.popleft()
            self._records.pop(evicted, None)
            self._done.pop(evicted, None)

    async def _persist(self, record: DeploymentRecord) -> None:
        await self.store.save(record.model_copy(deep=True))
        if self.bus is not None:
            await self.bus.publish(
                Event(
                    event_type="deployment.status",
                    source="deploy.scheduler",
                    payload=record.status_payload(),
                    correlation_id=record.id,
                )
            )


__all__ = ["DeploymentQueue", "QueueStatus"]
