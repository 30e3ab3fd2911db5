"""In-memory test doubles for every narrow interface of the engine.

None of these touch the host: no processes, no sockets, no files outside
what the caller points them at. They record calls so tests can assert on
ordering, and expose knobs for scripting failures.

Example::

    runtime = FakeContainerRuntime()
    runtime.exit_on_start.add("api-main")      # container dies immediately
    runtime.health["api-dev"] = "healthy"      # healthcheck passes at once
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from dotenv import dotenv_values

from shipyard.core.errors import CertificateError, DnsError, ProcessError, ProxyError, SourceError
from shipyard.runtime.container import ContainerState, ContainerStats, ContainerSummary
from shipyard.runtime.process import ProcessResult

# =============================================================================
# PROCESS RUNNER
# =============================================================================


class FakeProcessRunner:
    """Returns scripted results keyed by command prefix.

    ``responses`` maps a tuple prefix of the argument vector to either a
    :class:`ProcessResult` or a callable producing one. Unmatched commands
    succeed with empty output. Every call is appended to ``calls``.
    """

    def __init__(self) -> None:
        self.responses: dict[tuple[str, ...], ProcessResult | Callable[[list[str]], ProcessResult]] = {}
        self.calls: list[list[str]] = []
        self.cwds: list[str | None] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[tuple(prefix)] = ProcessResult(
            args=list(prefix), returncode=returncode, stdout=stdout, stderr=stderr
        )

    def _match(self, argv: list[str]) -> ProcessResult:
        best: tuple[str, ...] | None = None
        for prefix in self.responses:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return ProcessResult(args=argv, returncode=0)
        response = self.responses[best]
        result = response(argv) if callable(response) else response
        return ProcessResult(argv, result.returncode, result.stdout, result.stderr)

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        secrets: Sequence[str] = (),
    ) -> ProcessResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        self.cwds.append(str(cwd) if cwd else None)
        result = self._match(argv)
        if check and result.returncode != 0:
            raise ProcessError(
                f"Command failed (exit {result.returncode}): {' '.join(argv)}",
                args=argv,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def commands(self, program: str) -> list[list[str]]:
        """Calls whose executable is ``program``."""
        return [c for c in self.calls if c and c[0] == program]


# =============================================================================
# CONTAINER RUNTIME
# =============================================================================


@dataclass
class FakeContainer:
    name: str
    image: str
    ports: dict[int, int] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    restart: str = "unless-stopped"
    running: bool = True
    health: str | None = None
    exit_code: int | None = None
    logs: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class FakeContainerRuntime:
    """Container runtime kept entirely in dictionaries.

    Knobs
    ─────
    build_failures : image tags whose build raises ``ProcessError``
    run_failures   : container names whose ``run_container`` raises
    exit_on_start  : container names that are stopped right after start
    health         : container name → healthcheck status reported by inspect
    logs_for       : container name → log text
    build_delay    : seconds each build sleeps (lets tests overlap builds)
    exec_handler   : ``(name, command) -> stdout`` for ``exec``
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.images: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.build_failures: set[str] = set()
        self.run_failures: set[str] = set()
        self.exit_on_start: set[str] = set()
        self.health: dict[str, str] = {}
        self.logs_for: dict[str, str] = {}
        self.build_delay: float = 0.0
        self.exec_handler: Callable[[str, Sequence[str]], str] | None = None
        self.stats_for: dict[str, ContainerStats] = {}
        self.active_builds = 0
        self.max_active_builds = 0
        self.run_count: dict[str, int] = {}

    async def build_image(self, tag: str, context: Path, *, no_cache: bool = True) -> None:
        self.calls.append(("build", tag))
        self.active_builds += 1
        self.max_active_builds = max(self.max_active_builds, self.active_builds)
        try:
            if self.build_delay:
                await asyncio.sleep(self.build_delay)
            if tag in self.build_failures:
                raise ProcessError(f"docker build failed for {tag}", args=["docker", "build", tag], returncode=1)
            self.images.add(tag)
        finally:
            self.active_builds -= 1

    async def remove_image(self, tag: str) -> None:
        self.calls.append(("rmi", tag))
        self.images.discard(tag)

    async def prune_images(self) -> None:
        self.calls.append(("prune", ""))

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
        self.calls.append(("run", name))
        if name in self.run_failures:
            raise ProcessError(f"docker run failed for {name}", args=["docker", "run", name], returncode=125)
        if name in self.containers:
            raise ProcessError(f"Conflict. The container name {name!r} is already in use", returncode=125)
        merged_env: dict[str, str] = {}
        if env_file is not None:
            merged_env.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        merged_env.update(env or {})
        container = FakeContainer(
            name=name,
            image=image,
            ports=dict(ports or {}),
            env=merged_env,
            volumes=dict(volumes or {}),
            labels=dict(labels or {}),
            restart=restart,
            health=self.health.get(name),
            logs=self.logs_for.get(name, ""),
        )
        if name in self.exit_on_start:
            container.running = False
            container.exit_code = 1
        self.containers[name] = container
        self.run_count[name] = self.run_count.get(name, 0) + 1
        return f"{len(self.calls):012d}"

    async def remove_container(self, name: str) -> None:
        self.calls.append(("rm", name))
        self.containers.pop(name, None)

    async def start_container(self, name: str) -> None:
        self.calls.append(("start", name))
        self._require(name).running = True

    async def stop_container(self, name: str) -> None:
        self.calls.append(("stop", name))
        container = self._require(name)
        container.running = False
        container.exit_code = 0

    async def restart_container(self, name: str) -> None:
        self.calls.append(("restart", name))
        container = self._require(name)
        container.running = True
        container.started_at = datetime.now(UTC)

    async def inspect(self, name: str) -> ContainerState:
        container = self.containers.get(name)
        if container is None:
            return ContainerState.missing()
        return ContainerState(
            exists=True,
            running=container.running,
            status="running" if container.running else "exited",
            health=container.health,
            started_at=container.started_at,
            exit_code=container.exit_code,
        )

    async def logs(self, name: str, tail: int = 50) -> str:
        container = self.containers.get(name)
        text = container.logs if container else self.logs_for.get(name, "")
        return "\n".join(text.splitlines()[-tail:])

    async def exec(self, name: str, command: Sequence[str]) -> str:
        self.calls.append(("exec", name))
        container = self._require(name)
        if not container.running:
            raise ProcessError(f"Container {name} is not running", returncode=1)
        if self.exec_handler is not None:
            return self.exec_handler(name, command)
        return ""

    async def stats(self, name: str) -> ContainerStats:
        return self.stats_for.get(name, ContainerStats(cpu="0.50%", memory="20MiB / 1GiB"))

    async def list_containers(self, labels: Mapping[str, str] | None = None) -> list[ContainerSummary]:
        wanted = dict(labels or {})
        return [
            ContainerSummary(
                name=c.name,
                image=c.image,
                status="running" if c.running else "exited",
                labels=dict(c.labels),
            )
            for c in self.containers.values()
            if all(c.labels.get(k) == v for k, v in wanted.items())
        ]

    def _require(self, name: str) -> FakeContainer:
        container = self.containers.get(name)
        if container is None:
            raise ProcessError(f"Error: No such container: {name}", returncode=1)
        return container


# =============================================================================
# SOURCE
# =============================================================================


class FakeSource:
    """Writes ``files`` into the checkout instead of running git.

    ``files`` maps a project slug (the parent of the per-branch checkout
    directory) to ``{relative_path: content}``; ``default_files`` is used
    for anything else.
    """

    def __init__(self, default_files: Mapping[str, str] | None = None) -> None:
        self.default_files = dict(default_files or {"Dockerfile": "FROM node:20\nEXPOSE 3000\n"})
        self.files: dict[str, dict[str, str]] = {}
        self.failures: set[str] = set()
        self.synced: list[tuple[str, str, Path]] = []

    async def sync(self, repo_url: str, branch: str, path: Path) -> Path:
        path = Path(path)
        self.synced.append((repo_url, branch, path))
        if repo_url in self.failures:
            raise SourceError(f"Failed to fetch {branch}: repository not found")
        path.mkdir(parents=True, exist_ok=True)
        for rel, content in self.files.get(path.parent.name, self.default_files).items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return path


# =============================================================================
# NETWORK
# =============================================================================


class FakeProxy:
    """Reverse proxy that remembers its sites."""

    def __init__(self) -> None:
        self.sites: dict[str, int] = {}
        self.reloads = 0
        self.fail_configure = False
        self.fail_reload = False

    async def configure_site(self, domain: str, port: int) -> None:
        if self.fail_configure:
            raise ProxyError(f"nginx: configuration for {domain} is invalid")
        self.sites[domain] = port
        await self.reload()

    async def remove_site(self, domain: str) -> None:
        self.sites.pop(domain, None)
        await self.reload()

    async def reload(self) -> None:
        if self.fail_reload:
            raise ProxyError("nginx reload failed")
        self.reloads += 1


class FakeCertificateAuthority:
    def __init__(self) -> None:
        self.issued: list[str] = []
        self.renewed: list[str] = []
        self.failures: dict[str, str] = {}

    def has_certificate(self, domain: str) -> bool:
        return domain in self.issued

    async def issue(self, domain: str) -> None:
        if domain in self.failures:
            raise CertificateError(self.failures[domain])
        self.issued.append(domain)

    async def renew(self, domain: str) -> None:
        if domain in self.failures:
            raise CertificateError(self.failures[domain])
        self.renewed.append(domain)


class FakeDnsProvider:
    def __init__(self) -> None:
        self.records: dict[str, str] = {}
        self.fail = False

    async def upsert_a_record(self, name: str, ip: str) -> str:
        if self.fail:
            raise DnsError("Cloudflare API error: Authentication error")
        action = "updated" if name in self.records else "created"
        self.records[name] = ip
        return action

    async def delete_record(self, name: str) -> str:
        if self.fail:
            raise DnsError("Cloudflare API error: Authentication error")
        return "deleted" if self.records.pop(name, None) else "not_found"


class FakeResolver:
    """Resolves names listed in ``addresses``; everything else is NXDOMAIN."""

    def __init__(self, addresses: Mapping[str, list[str]] | None = None, *, resolve_all: bool = True) -> None:
        self.addresses = dict(addresses or {})
        self.resolve_all = resolve_all
        self.lookups: list[str] = []

    async def resolve(self, name: str) -> list[str]:
        self.lookups.append(name)
        if name in self.addresses:
            return list(self.addresses[name])
        return ["203.0.113.10"] if self.resolve_all else []


__all__ = [
    "FakeCertificateAuthority",
    "FakeContainer",
    "FakeContainerRuntime",
    "FakeDnsProvider",
    "FakeProcessRunner",
    "FakeProxy",
    "FakeResolver",
    "FakeSource",
]
