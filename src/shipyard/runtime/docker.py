"""Container runtime backed by the ``docker`` CLI.

Shells out to ``docker`` through :class:`~shipyard.runtime.process.ProcessRunner`
instead of using a Docker SDK, so it works with anything that exposes a
docker-compatible CLI (Docker Engine, Podman's shim, Colima).

Failures surface as :class:`~shipyard.core.errors.ProcessError`; callers
translate them into deployment or database errors. Removal operations are
idempotent: a missing container or image is not an error.

Tags:
    container, docker, subprocess, lifecycle
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from shipyard.core.errors import ProcessError
from shipyard.core.logging import get_logger
from shipyard.runtime.container import ContainerState, ContainerStats, ContainerSummary
from shipyard.runtime.process import CommandRunner, ProcessResult, ProcessRunner

logger = get_logger(__name__)

_MISSING_MARKERS = ("no such container", "no such object", "no such image", "not found")
_FRACTION = re.compile(r"\.(\d{6})\d*")


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse docker's RFC 3339 timestamps (nanosecond precision, ``Z`` suffix)."""
    if not value or value.startswith("0001-01-01"):
        return None
    text = _FRACTION.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_state(payload: dict[str, Any]) -> ContainerState:
    """Build a :class:`ContainerState` from ``{{json .State}}`` output."""
    health = payload.get("Health") or {}
    return ContainerState(
        exists=True,
        running=bool(payload.get("Running")),
        status=payload.get("Status", "unknown"),
        health=health.get("Status") or None,
        started_at=parse_docker_time(payload.get("StartedAt")),
        exit_code=payload.get("ExitCode"),
    )


def parse_labels(raw: str) -> dict[str, str]:
    """Parse the comma-separated ``k=v`` label column of ``docker ps``."""
    labels: dict[str, str] = {}
    for item in raw.split(","):
        if "=" in item:
            key, _, value = item.partition("=")
            labels[key.strip()] = value.strip()
    return labels


def _is_missing(result: ProcessResult) -> bool:
    text = result.stderr.lower()
    return any(marker in text for marker in _MISSING_MARKERS)


class DockerRuntime:
    """Implements :class:`~shipyard.runtime.container.ContainerRuntime` with the docker CLI.

    Parameters
    ----------
    runner
        Process runner used for every invocation.
    docker
        Name or path of the docker binary.
    build_timeout
        Seconds allowed for ``docker build``.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        docker: str = "docker",
        build_timeout: float = 1800.0,
        command_timeout: float = 120.0,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.docker = docker
        self.build_timeout = build_timeout
        self.command_timeout = command_timeout

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def build_image(self, tag: str, context: Path, *, no_cache: bool = True) -> None:
        args = ["build"]
        if no_cache:
            args.append("--no-cache")
        args.extend(["-t", tag, str(context)])
        await self._docker(args, timeout=self.build_timeout)
        logger.info("image.built", image=tag)

    async def remove_image(self, tag: str) -> None:
        result = await self._docker(["rmi", "-f", tag], check=False)
        if not result.ok and not _is_missing(result):
            raise ProcessError(
                f"Failed to remove image {tag}: {result.stderr.strip()}",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )

    async def prune_images(self) -> None:
        await self._docker(["image", "prune", "-f"])
        logger.info("image.pruned")

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

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
    ) -> str:
        """Start a detached container and return its id."""
        cmd = ["run", "-d", "--name", name, "--restart", restart]
        for host_port, container_port in (ports or {}).items():
            cmd.extend(["-p", f"{host_port}:{container_port}"])
        if env_file is not None:
            cmd.extend(["--env-file", str(env_file)])
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        for source, target in (volumes or {}).items():
            cmd.extend(["-v", f"{source}:{target}"])
        for key, value in (labels or {}).items():
            cmd.extend(["--label", f"{key}={value}"])
        cmd.append(image)

        secrets = [v for k, v in (env or {}).items() if "PASSWORD" in k.upper()]
        result = await self._docker(cmd, secrets=secrets)
        container_id = result.stdout.strip()[:12]
        logger.info("container.started", container=name, image=image, ports=dict(ports or {}))
        return container_id

    async def remove_container(self, name: str) -> None:
        result = await self._docker(["rm", "-f", name], check=False)
        if result.ok:
            logger.debug("container.removed", container=name)
        elif not _is_missing(result):
            raise ProcessError(
                f"Failed to remove container {name}: {result.stderr.strip()}",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )

    async def start_container(self, name: str) -> None:
        await self._docker(["start", name])

    async def stop_container(self, name: str) -> None:
        await self._docker(["stop", name])

    async def restart_container(self, name: str) -> None:
        await self._docker(["restart", name])

    async def inspect(self, name: str) -> ContainerState:
        result = await self._docker(["inspect", "--format", "{{json .State}}", name], check=False)
        if not result.ok:
            if _is_missing(result):
                return ContainerState.missing()
            raise ProcessError(
                f"docker inspect {name} failed: {result.stderr.strip()}",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        try:
            payload = json.loads(result.stdout.strip())
        except json.JSONDecodeError as exc:
            raise ProcessError(f"Unparseable inspect output for {name}", cause=exc) from exc
        return parse_state(payload)

    async def logs(self, name: str, tail: int = 50) -> str:
        result = await self._docker(["logs", "--tail", str(tail), name], check=False)
        return result.output

    async def exec(self, name: str, command: Sequence[str]) -> str:
        result = await self._docker(["exec", name, *command])
        return result.stdout

    async def stats(self, name: str) -> ContainerStats:
        result = await self._docker(
            ["stats", "--no-stream", "--format", "{{json .}}", name], check=False
        )
        if not result.ok or not result.stdout.strip():
            return ContainerStats()
        try:
            payload = json.loads(result.stdout.strip().splitlines()[0])
        except json.JSONDecodeError:
            return ContainerStats()
        return ContainerStats(
            cpu=payload.get("CPUPerc", "0%"),
            memory=payload.get("MemUsage", "0B / 0B"),
        )

    async def list_containers(self, labels: Mapping[str, str] | None = None) -> list[ContainerSummary]:
        cmd = ["ps", "--all", "--format", "{{json .}}"]
        for key, value in (labels or {}).items():
            cmd.extend(["--filter", f"label={key}={value}"])
        result = await self._docker(cmd, check=False)
        containers = []
        for line in result.stdout.strip().splitlines():
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("docker.ps_unparseable", line=line[:200])
                continue
            containers.append(
                ContainerSummary(
                    name=row.get("Names", ""),
                    image=row.get("Image", ""),
                    status=row.get("State") or row.get("Status", ""),
                    labels=parse_labels(row.get("Labels", "")),
                )
            )
        return containers

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _docker(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        secrets: Sequence[str] = (),
    ) -> ProcessResult:
        return await self.runner.run(
            [self.docker, *args],
            timeout=timeout or self.command_timeout,
            check=check,
            secrets=secrets,
        )


__all__ = ["DockerRuntime", "parse_docker_time", "parse_labels", "parse_state"]
