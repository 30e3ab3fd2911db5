"""Container lifecycle for application deployments.

Turns a :class:`~shipyard.deploy.models.DeploymentRequest` into a running,
verified container:

1. sync the source checkout (clone, or fetch + hard reset),
2. require a ``Dockerfile`` and read its ``EXPOSE`` port,
3. remove the previous container and image of the same name,
4. build the image without cache,
5. reserve a host port,
6. resolve the environment into a transient env file,
7. ``docker run`` with a restart policy, then delete the env file,
8. poll until the container is ready, or fail fast if it dies.

Redeploying a branch therefore always replaces the container in place under
the same name. Each step raises a
:class:`~shipyard.core.errors.DeploymentError` subclass; nothing is retried
here.

Key Concepts:
    ReadinessPolicy: Interval, attempt bound and the two fallbacks used for
        images without a healthcheck (time running, log pattern).
    ContainerLifecycleManager: ``deploy_container()``, ``remove_container()``,
        ``list_deployed()``, ``prune_images()``.

Tags:
    deployment, docker, lifecycle, health, readiness
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

from shipyard.core.errors import (
    BuildError,
    ContainerExitedError,
    HealthTimeoutError,
    MissingBuildFileError,
    PollCancelledError,
    ProcessError,
    StartError,
)
from shipyard.core.logging import get_logger
from shipyard.core.settings import ShipyardSettings
from shipyard.deploy.env import mask_environment, merge_environment, read_source_env, transient_env_file
from shipyard.deploy.logs import StepLogger
from shipyard.deploy.models import ContainerInstance, DeploymentRequest
from shipyard.deploy.naming import NamingRules
from shipyard.deploy.source import SourceCheckout
from shipyard.deploy.store import EnvironmentStore, InMemoryEnvironmentStore
from shipyard.runtime.container import KIND_APP, ContainerRuntime, ContainerSummary, shipyard_labels
from shipyard.runtime.polling import PollPolicy, poll_until
from shipyard.runtime.ports import PortAllocator

logger = get_logger(__name__)

EXPOSE_PATTERN = re.compile(r"^\s*EXPOSE\s+(\d+)", re.IGNORECASE | re.MULTILINE)
READY_LOG_PATTERN = re.compile(r"server running|listening|started|ready", re.IGNORECASE)
READY_LOG_TAIL = 20
DEATH_LOG_TAIL = 50


def detect_exposed_port(dockerfile: str) -> int | None:
    """Return the first ``EXPOSE`` port of a Dockerfile, if any.

    >>> detect_exposed_port("FROM node:20\\nEXPOSE 8080\\n")
    8080
    """
    match = EXPOSE_PATTERN.search(dockerfile)
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class ReadinessPolicy:
    """How long and how a freshly started container is watched.

    Thresholds are in attempts; :meth:`from_settings` converts the
    second-based settings using the poll interval.
    """

    interval: float = 1.0
    max_attempts: int = 60
    running_threshold: int = 30
    log_probe_after: int = 15
    log_probe_every: int = 5

    @classmethod
    def from_settings(cls, settings: ShipyardSettings) -> ReadinessPolicy:
        return cls(
            interval=settings.health_interval,
            max_attempts=settings.health_max_attempts,
            running_threshold=settings.attempts_for(settings.health_running_threshold),
            log_probe_after=settings.attempts_for(settings.health_log_probe_after),
            log_probe_every=max(1, settings.health_log_probe_every),
        )

    @property
    def poll(self) -> PollPolicy:
        return PollPolicy(interval=self.interval, max_attempts=self.max_attempts)


def _raise_if_cancelled(cancel: asyncio.Event | None, step: str) -> None:
    if cancel is not None and cancel.is_set():
        raise PollCancelledError(f"Deployment cancelled before {step}")


class ContainerLifecycleManager:
    """Builds, starts and verifies application containers.

    Parameters
    ----------
    runtime
        Container runtime (docker CLI in production).
    source
        Source checkout manager.
    ports
        Allocator for application host ports.
    naming
        Naming rules bound to the base domain.
    deploy_base_path
        Parent directory of the per-branch checkouts.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        source: SourceCheckout,
        ports: PortAllocator,
        naming: NamingRules,
        *,
        deploy_base_path: Path,
        env_store: EnvironmentStore | None = None,
        default_app_port: int = 3000,
        readiness: ReadinessPolicy | None = None,
    ) -> None:
        self.runtime = runtime
        self.source = source
        self.ports = ports
        self.naming = naming
        self.deploy_base_path = Path(deploy_base_path)
        self.env_store = env_store or InMemoryEnvironmentStore()
        self.default_app_port = default_app_port
        self.readiness = readiness or ReadinessPolicy()

    async def deploy_container(
        self,
        request: DeploymentRequest,
        cancel: asyncio.Event | None = None,
        steps: StepLogger | None = None,
    ) -> ContainerInstance:
        """Run the full build-and-start sequence for ``request``."""
        steps = steps or StepLogger(None, request.id)
        project, branch = request.project_name, request.branch
        container_name = self.naming.container_name(project, branch)
        image = self.naming.image_tag(project, branch)
        domain = self.naming.domain(project, branch)
        checkout = self.naming.checkout_path(self.deploy_base_path, project, branch)

        _raise_if_cancelled(cancel, "source sync")
        await steps.info(f"Syncing source for {project}@{branch} into {checkout}")
        await self.source.sync(request.repo_url, branch, checkout)

        dockerfile = checkout / "Dockerfile"
        if not dockerfile.is_file():
            raise MissingBuildFileError("No Dockerfile found in repository").with_context(
                deployment_id=request.id, project=project, branch=branch
            )
        internal_port = detect_exposed_port(dockerfile.read_text(encoding="utf-8", errors="replace"))
        if internal_port is None:
            internal_port = self.default_app_port
            await steps.warning(f"No EXPOSE directive in Dockerfile, using default port {internal_port}")

        _raise_if_cancelled(cancel, "image build")
        await steps.info(f"Removing previous container and image for {container_name}")
        try:
            await self.runtime.remove_container(container_name)
            await self.runtime.remove_image(image)
        except ProcessError as exc:
            raise BuildError(f"Cleanup of {container_name} failed: {exc.message}", cause=exc) from exc

        await steps.info(f"Building image {image}")
        try:
            await self.runtime.build_image(image, checkout, no_cache=True)
        except ProcessError as exc:
            raise BuildError(
                f"Image build failed for {image}: {_tail(exc.output or exc.message)}", cause=exc
            ).with_context(deployment_id=request.id, project=project, branch=branch) from exc

        _raise_if_cancelled(cancel, "container start")
        host_port = await self.ports.allocate()
        try:
            stored = await self.env_store.get_variables(project, branch)
            env = merge_environment(
                read_source_env(checkout),
                stored,
                branch=branch,
                commit=request.commit,
                domain=domain,
            )
            logger.info(
                "deployment.environment",
                deployment_id=request.id,
                stored_count=len(stored),
                env=mask_environment(env),
            )
            await steps.info(f"Starting container {container_name} on port {host_port}")
            with transient_env_file(env, prefix=f"{container_name}-") as env_file:
                try:
                    await self.runtime.run_container(
                        container_name,
                        image,
                        ports={host_port: internal_port},
                        env_file=env_file,
                        labels=shipyard_labels(KIND_APP, project=project, branch=branch),
                        restart="unless-stopped",
                    )
                except ProcessError as exc:
                    raise StartError(
                        f"Failed to start container {container_name}: {exc.message}", cause=exc
                    ).with_context(container=container_name) from exc
        finally:
            self.ports.release(host_port)

        await steps.info(f"Waiting for container {container_name} to become ready")
        await self.wait_until_ready(container_name, cancel=cancel)
        await steps.info(f"Container {container_name} is ready")

        return ContainerInstance(
            name=container_name,
            image=image,
            host_port=host_port,
            internal_port=internal_port,
            environment=mask_environment(env),
        )

    async def wait_until_ready(self, container_name: str, cancel: asyncio.Event | None = None) -> int:
        """Poll ``container_name`` under the readiness policy.

        Raises:
            ContainerExitedError: The container stopped; carries its last log lines.
            HealthTimeoutError: No readiness signal within the attempt budget.
            PollCancelledError: ``cancel`` was set.
        """
        policy = self.readiness

        async def probe(attempt: int) -> bool:
            try:
                state = await self.runtime.inspect(container_name)
            except ProcessError as exc:
                logger.warning(
                    "container.inspect_failed",
                    container=container_name,
                    attempt=attempt,
                    error=exc.message,
                )
                return False

            if state.health == "healthy":
                logger.info("container.healthy", container=container_name, attempt=attempt)
                return True

            if not state.exists or state.stopped:
                try:
                    logs = await self.runtime.logs(container_name, tail=DEATH_LOG_TAIL)
                except ProcessError as exc:
                    logs = ""
                    logger.warning("container.logs_unavailable", container=container_name, error=exc.message)
                logger.error("container.stopped", container=container_name, exit_code=state.exit_code)
                raise ContainerExitedError(
                    f"Container {container_name} stopped unexpectedly"
                    + (f" (exit code {state.exit_code})" if state.exit_code is not None else ""),
                    logs=logs,
                ).with_context(container=container_name)

            if state.running and state.health is None:
                if attempt >= policy.running_threshold:
                    logger.info("container.running_threshold", container=container_name, attempt=attempt)
                    return True
                if attempt >= policy.log_probe_after and attempt % policy.log_probe_every == 0:
                    logs = await self.runtime.logs(container_name, tail=READY_LOG_TAIL)
                    if READY_LOG_PATTERN.search(logs):
                        logger.info("container.ready_log", container=container_name, attempt=attempt)
                        return True
            return False

        try:
            return await poll_until(
                probe, policy=policy.poll, cancel=cancel, what=f"container {container_name}"
            )
        except HealthTimeoutError as exc:
            raise HealthTimeoutError(
                f"Container {container_name} failed to start properly: "
                f"timed out waiting for health check after {exc.attempts} attempts",
                attempts=exc.attempts,
                cause=exc,
            ).with_context(container=container_name) from exc

    async def remove_container(self, project: str, branch: str) -> str:
        """Stop and remove the container and image of a deployment; returns the container name."""
        container_name = self.naming.container_name(project, branch)
        await self.runtime.remove_container(container_name)
        await self.runtime.remove_image(self.naming.image_tag(project, branch))
        logger.info("deployment.container_removed", container=container_name)
        return container_name

    async def list_deployed(self) -> list[ContainerSummary]:
        """Application containers created by shipyard."""
        return await self.runtime.list_containers(labels=shipyard_labels(KIND_APP))

    async def prune_images(self) -> None:
        await self.runtime.prune_images()


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


__all__ = [
    "ContainerLifecycleManager",
    "ReadinessPolicy",
    "detect_exposed_port",
]
