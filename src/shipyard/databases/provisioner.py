"""Managed PostgreSQL instances.

Each instance is one ``postgres:<version>`` container with a bind-mounted
storage directory, a host port from the database range and generated
credentials. Provisioning is invoked directly (it does not go through the
deployment queue) and shares the port allocator and the poller with the
deployment path.

Creation order matters:

1. reject a duplicate (name, environment), or a container name owned by a
   registered or in-flight instance, before touching any container,
2. remove a stale container of the same name (a leftover of a failed
   attempt, since no registered instance owns it) and its storage,
3. reserve a port, create the storage directory, start the container,
4. wait for ``pg_isready`` to report ``accepting connections``,
5. register the instance and return it, with the password, exactly once.

Tags:
    database, postgres, provisioning, docker
"""

from __future__ import annotations

import base64
import secrets
import shutil
from datetime import UTC, datetime
from pathlib import Path

from shipyard.core.errors import (
    ContainerExitedError,
    DatabaseNotFoundError,
    DuplicateNameError,
    HealthTimeoutError,
    ProcessError,
    StartError,
)
from shipyard.core.logging import get_logger
from shipyard.databases.models import DatabaseInstance, DatabaseStats, DatabaseStatus
from shipyard.databases.registry import DatabaseRegistry, InMemoryDatabaseRegistry
from shipyard.deploy.naming import NamingRules, sanitize_identifier
from shipyard.runtime.container import KIND_DATABASE, ContainerRuntime, shipyard_labels
from shipyard.runtime.polling import PollPolicy, poll_until
from shipyard.runtime.ports import PortAllocator

logger = get_logger(__name__)

POSTGRES_PORT = 5432
POSTGRES_DATA_MOUNT = "/var/lib/postgresql"
DEATH_LOG_TAIL = 20
SIZE_QUERY = "SELECT pg_size_pretty(pg_database_size(current_database()))"
CONNECTIONS_QUERY = "SELECT count(*) FROM pg_stat_activity WHERE state = 'active'"


def generate_password(length: int = 24) -> str:
    """Random password: base64 of ``length`` random bytes, cut to ``length``, no ``+`` or ``/``."""
    raw = base64.b64encode(secrets.token_bytes(length)).decode("ascii")[:length]
    return raw.replace("+", "A").replace("/", "B")


def generate_instance_id() -> str:
    return f"db-{secrets.token_hex(16)}"


def format_uptime(seconds: float) -> str:
    """Coarse human uptime: ``2d 3h``, ``5h 12m``, ``7m`` or ``42s``.

    >>> format_uptime(93784)
    '1d 2h'
    """
    seconds = int(max(0, seconds))
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{seconds}s"


class DatabaseProvisioner:
    """Creates and operates Postgres containers.

    Parameters
    ----------
    runtime
        Container runtime.
    ports
        Allocator over the database port range.
    naming
        Naming rules (for container and host names).
    data_dir
        Parent directory of instance storage.
    registry
        Where instances are recorded.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        ports: PortAllocator,
        naming: NamingRules,
        *,
        data_dir: Path,
        registry: DatabaseRegistry | None = None,
        postgres_version: str = "16",
        readiness: PollPolicy | None = None,
    ) -> None:
        self.runtime = runtime
        self.ports = ports
        self.naming = naming
        self.data_dir = Path(data_dir)
        self.registry = registry or InMemoryDatabaseRegistry()
        self.postgres_version = postgres_version
        self.readiness = readiness or PollPolicy(interval=2.0, max_attempts=60)
        self._in_flight: set[str] = set()

    async def create_instance(self, name: str, environment: str = "production") -> DatabaseInstance:
        """Provision a new instance.

        Creations of different instances run concurrently. The duplicate
        check and the claim on the container name happen without an
        ``await`` in between, so two callers can never both pass it.

        Raises:
            DuplicateNameError: (name, environment) is already registered, or
                its container name is owned by a registered or in-flight instance.
            PortExhaustedError: No free port in the database range.
            StartError: ``docker run`` failed.
            ContainerExitedError: The container stopped while starting.
            HealthTimeoutError: Postgres never accepted connections.
        """
        container_name = self.naming.database_container(name, environment)
        self._claim(name, environment, container_name)
        try:
            return await self._create(name, environment, container_name)
        finally:
            self._in_flight.discard(container_name)

    def _claim(self, name: str, environment: str, container_name: str) -> None:
        if self.registry.get_by_name(name, environment) is not None:
            raise DuplicateNameError(
                f'Database "{name}" already exists in {environment} environment'
            ).with_context(name=name, environment=environment)
        owner = self.registry.get_by_container(container_name)
        if owner is not None:
            raise DuplicateNameError(
                f'Database "{name}" maps to container {container_name}, '
                f'already used by database "{owner.name}" in {owner.environment}'
            ).with_context(container=container_name, instance_id=owner.id)
        if container_name in self._in_flight:
            raise DuplicateNameError(
                f"Container {container_name} is already being created"
            ).with_context(container=container_name, name=name, environment=environment)
        self._in_flight.add(container_name)

    async def _create(self, name: str, environment: str, container_name: str) -> DatabaseInstance:
        instance_id = generate_instance_id()
        username = sanitize_identifier(name)
        password = generate_password()
        host = self.naming.database_host(container_name)
        storage = self.data_dir / container_name
        logger.info("database.creating", name=name, environment=environment, container=container_name)

        stale = await self.runtime.inspect(container_name)
        if stale.exists:
            logger.warning("database.stale_container", container=container_name, storage=str(storage))
            await self.runtime.remove_container(container_name)
            shutil.rmtree(storage, ignore_errors=True)

        port = await self.ports.allocate()
        try:
            storage.mkdir(parents=True, exist_ok=True)
            try:
                await self.runtime.run_container(
                    container_name,
                    f"postgres:{self.postgres_version}",
                    ports={port: POSTGRES_PORT},
                    env={
                        "POSTGRES_USER": username,
                        "POSTGRES_PASSWORD": password,
                        "POSTGRES_DB": username,
                    },
                    volumes={str(storage): POSTGRES_DATA_MOUNT},
                    labels=shipyard_labels(KIND_DATABASE, database=instance_id, environment=environment),
                    restart="unless-stopped",
                )
            except ProcessError as exc:
                raise StartError(
                    f"Failed to start database container {container_name}: {exc.message}", cause=exc
                ).with_context(container=container_name) from exc
        finally:
            self.ports.release(port)

        await self._wait_ready(container_name, username)

        instance = DatabaseInstance(
            id=instance_id,
            name=name,
            environment=environment,
            container_name=container_name,
            host=host,
            port=port,
            username=username,
            password=password,
            database=username,
            storage_path=str(storage),
        )
        self.registry.add(instance)
        logger.info("database.created", id=instance_id, container=container_name, port=port)
        return instance

    async def _wait_ready(self, container_name: str, username: str) -> None:
        async def accepting(attempt: int) -> bool:
            state = await self.runtime.inspect(container_name)
            if not state.running:
                try:
                    logs = await self.runtime.logs(container_name, tail=DEATH_LOG_TAIL)
                except ProcessError as exc:
                    logs = ""
                    logger.warning("database.logs_unavailable", container=container_name, error=exc.message)
                logger.error("database.container_not_running", container=container_name)
                raise ContainerExitedError(
                    f"Container {container_name} failed to start", logs=logs
                ).with_context(container=container_name)
            try:
                output = await self.runtime.exec(container_name, ["pg_isready", "-U", username])
            except ProcessError:
                if attempt % 10 == 0:
                    logger.info("database.waiting", container=container_name, attempt=attempt)
                return False
            return "accepting connections" in output

        try:
            await poll_until(accepting, policy=self.readiness, what=f"database {container_name}")
        except HealthTimeoutError as exc:
            raise HealthTimeoutError(
                f"Database failed to start after {self.readiness.budget_seconds:.0f} seconds",
                attempts=exc.attempts,
                cause=exc,
            ).with_context(container=container_name) from exc

    # ------------------------------------------------------------------
    # Read paths (redacted)
    # ------------------------------------------------------------------

    def list_instances(self) -> list[DatabaseInstance]:
        return [i.redacted() for i in self.registry.list()]

    def get_instance(self, instance_id: str) -> DatabaseInstance:
        return self._require(instance_id).redacted()

    async def stats(self, instance_id: str) -> DatabaseStats:
        """Size, active connections, cpu/memory and uptime of a running instance.

        Raises:
            DatabaseNotFoundError: ``instance_id`` is not registered.
        """
        instance = self._require(instance_id)
        state = await self.runtime.inspect(instance.container_name)
        if not state.running:
            return DatabaseStats.stopped()

        size = await self._psql(instance, SIZE_QUERY)
        connections = await self._psql(instance, CONNECTIONS_QUERY)
        usage = await self.runtime.stats(instance.container_name)
        uptime = "N/A"
        if state.started_at is not None:
            uptime = format_uptime((datetime.now(UTC) - state.started_at).total_seconds())

        try:
            connection_count = int(connections)
        except ValueError:
            connection_count = 0
        return DatabaseStats(
            status="running",
            size=size or "N/A",
            connections=connection_count,
            cpu=usage.cpu,
            memory=usage.memory,
            uptime=uptime,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self, instance_id: str) -> DatabaseInstance:
        instance = self._require(instance_id)
        await self.runtime.start_container(instance.container_name)
        self.registry.update_status(instance_id, DatabaseStatus.ACTIVE)
        logger.info("database.started", id=instance_id, container=instance.container_name)
        return self.get_instance(instance_id)

    async def stop(self, instance_id: str) -> DatabaseInstance:
        instance = self._require(instance_id)
        await self.runtime.stop_container(instance.container_name)
        self.registry.update_status(instance_id, DatabaseStatus.STOPPED)
        logger.info("database.stopped", id=instance_id, container=instance.container_name)
        return self.get_instance(instance_id)

    async def restart(self, instance_id: str) -> DatabaseInstance:
        instance = self._require(instance_id)
        await self.runtime.restart_container(instance.container_name)
        self.registry.update_status(instance_id, DatabaseStatus.ACTIVE)
        logger.info("database.restarted", id=instance_id, container=instance.container_name)
        return self.get_instance(instance_id)

    async def delete(self, instance_id: str, purge_storage: bool = False) -> None:
        """Remove the container and deregister; storage is kept unless ``purge_storage``."""
        instance = self._require(instance_id)
        await self.runtime.remove_container(instance.container_name)
        self.registry.remove(instance_id)
        if purge_storage:
            shutil.rmtree(instance.storage_path, ignore_errors=True)
        logger.info(
            "database.deleted",
            id=instance_id,
            container=instance.container_name,
            storage_purged=purge_storage,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require(self, instance_id: str) -> DatabaseInstance:
        instance = self.registry.get(instance_id)
        if instance is None:
            raise DatabaseNotFoundError(f"Database not found: {instance_id}").with_context(
                instance_id=instance_id
            )
        return instance

    async def _psql(self, instance: DatabaseInstance, query: str) -> str:
        output = await self.runtime.exec(
            instance.container_name,
            ["psql", "-U", instance.username, "-d", instance.database, "-t", "-c", query],
        )
        return output.strip()


__all__ = [
    "DatabaseProvisioner",
    "format_uptime",
    "generate_instance_id",
    "generate_password",
]
