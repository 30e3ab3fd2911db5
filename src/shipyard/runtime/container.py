"""Container runtime interface.

The lifecycle manager and the database provisioner talk to containers only
through :class:`ContainerRuntime`. :class:`~shipyard.runtime.docker.DockerRuntime`
implements it on top of the ``docker`` CLI;
:class:`~shipyard.runtime.fakes.FakeContainerRuntime` implements it in memory
for tests.

Containers created by shipyard carry ``shipyard.*`` labels
(``shipyard.kind``, ``shipyard.project``, ``shipyard.branch``) so they can
be listed without a separate registry.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

LABEL_PREFIX = "shipyard"
KIND_APP = "app"
KIND_DATABASE = "database"


@dataclass
class ContainerState:
    """Point-in-time state from ``docker inspect``.

    ``health`` is ``None`` when the image defines no healthcheck.
    """

    exists: bool
    running: bool = False
    status: str = "missing"
    health: str | None = None
    started_at: datetime | None = None
    exit_code: int | None = None

    @classmethod
    def missing(cls) -> ContainerState:
        return cls(exists=False)

    @property
    def stopped(self) -> bool:
        """True for a container that exists but is not running (exited, dead, restarting)."""
        return self.exists and not self.running


@dataclass
class ContainerStats:
    """One ``docker stats --no-stream`` sample."""

    cpu: str = "0%"
    memory: str = "0B / 0B"


@dataclass
class ContainerSummary:
    """A row of ``docker ps``."""

    name: str
    image: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class ContainerRuntime(Protocol):
    """Operations the engine performs on containers and images."""

    async def build_image(self, tag: str, context: Path, *, no_cache: bool = True) -> None: ...

    async def remove_image(self, tag: str) -> None: ...

    async def prune_images(self) -> None: ...

    async def run_container(
        self,
        name: str,
        image: str,
        *,
        ports: Mapping[int, int] | None = None,
        env: Mapping[str, str] | None = None,
        env_file: Path | None = None,
        volumes: Mapping[str, str] | None = None,
        labels: Mapping[str, str] | None = None,
        restart: str = "unless-stopped",
    ) -> str: ...

    async def remove_container(self, name: str) -> None: ...

    async def start_container(self, name: str) -> None: ...

    async def stop_container(self, name: str) -> None: ...

    async def restart_container(self, name: str) -> None: ...

    async def inspect(self, name: str) -> ContainerState: ...

    async def logs(self, name: str, tail: int = 50) -> str: ...

    async def exec(self, name: str, command: Sequence[str]) -> str: ...

    async def stats(self, name: str) -> ContainerStats: ...

    async def list_containers(self, labels: Mapping[str, str] | None = None) -> list[ContainerSummary]: ...


def shipyard_labels(kind: str, **extra: str) -> dict[str, str]:
    """Build the label set attached to every managed container."""
    labels = {f"{LABEL_PREFIX}.kind": kind}
    for key, value in extra.items():
        labels[f"{LABEL_PREFIX}.{key}"] = value
    return labels


__all__ = [
    "ContainerRuntime",
    "ContainerState",
    "ContainerStats",
    "ContainerSummary",
    "KIND_APP",
    "KIND_DATABASE",
    "LABEL_PREFIX",
    "shipyard_labels",
]
