"""Platform facade.

:class:`Platform` is the one object an outer layer (HTTP API, webhook
handler, CLI) talks to. It wires the engine together from
:class:`~shipyard.core.settings.ShipyardSettings` and exposes deployment
and database operations as coroutines.

Example::

    platform = Platform.from_settings(get_settings())
    deployment_id = await platform.enqueue_deployment(
        DeploymentRequest(project_name="api", repo_url=url, branch="main", commit=sha)
    )
    record = await platform.wait_for_deployment(deployment_id)
    await platform.shutdown()

Tags:
    facade, wiring, deployment, database
"""

from __future__ import annotations

import functools
from dataclasses import dataclass

from shipyard.core.events import Event, EventBus
from shipyard.core.events.memory import InMemoryEventBus
from shipyard.core.logging import get_logger
from shipyard.core.settings import ShipyardSettings
from shipyard.databases.models import DatabaseInstance, DatabaseStats
from shipyard.databases.provisioner import DatabaseProvisioner
from shipyard.databases.registry import InMemoryDatabaseRegistry, SqliteDatabaseRegistry
from shipyard.deploy.lifecycle import ContainerLifecycleManager, ReadinessPolicy
from shipyard.deploy.logs import DeploymentLogStore, LogEntry
from shipyard.deploy.models import DeploymentRecord, DeploymentRequest, DomainBinding
from shipyard.deploy.naming import NamingRules
from shipyard.deploy.scheduler import DeploymentQueue, QueueStatus
from shipyard.deploy.source import GitSource
from shipyard.deploy.store import DeploymentStore, EnvironmentStore, InMemoryDeploymentStore
from shipyard.network.certs import CertbotAuthority
from shipyard.network.dns import CloudflareDns, DigResolver, lookup_public_ip
from shipyard.network.provisioner import NetworkProvisioner
from shipyard.network.proxy import NginxProxy
from shipyard.runtime.docker import DockerRuntime
from shipyard.runtime.polling import PollPolicy
from shipyard.runtime.ports import PortAllocator
from shipyard.runtime.process import ProcessRunner

logger = get_logger(__name__)


@dataclass
class RemovalResult:
    container_name: str
    domain: str


class Platform:
    """Deployment queue, lifecycle, network and database provisioning behind one API."""

    def __init__(
        self,
        queue: DeploymentQueue,
        databases: DatabaseProvisioner,
        *,
        bus: EventBus,
        store: DeploymentStore,
        logs: DeploymentLogStore,
    ) -> None:
        self.queue = queue
        self.lifecycle = queue.lifecycle
        self.network = queue.network
        self.databases = databases
        self.bus = bus
        self.store = store
        self.logs = logs

    @classmethod
    def from_settings(
        cls,
        settings: ShipyardSettings,
        *,
        bus: EventBus | None = None,
        store: DeploymentStore | None = None,
        env_store: EnvironmentStore | None = None,
    ) -> Platform:
        """Build the production wiring (docker, git, nginx, certbot, Cloudflare)."""
        bus = bus or InMemoryEventBus()
        store = store or InMemoryDeploymentStore()
        logs = DeploymentLogStore(bus)
        runner = ProcessRunner()
        runtime = DockerRuntime(runner, docker=settings.docker_binary)
        naming = NamingRules(settings.base_domain, settings.production_branches)

        lifecycle = ContainerLifecycleManager(
            runtime,
            GitSource(runner, access_token=settings.git_access_token),
            PortAllocator(*settings.app_port_range, name="apps"),
            naming,
            deploy_base_path=settings.deploy_base_path,
            env_store=env_store,
            default_app_port=settings.default_app_port,
            readiness=ReadinessPolicy.from_settings(settings),
        )

        dns = None
        if settings.cloudflare_api_token:
            dns = CloudflareDns(settings.cloudflare_api_token)
        network = NetworkProvisioner(
            NginxProxy(settings.nginx_sites_available, settings.nginx_sites_enabled, runner),
            CertbotAuthority(settings.ssl_email, letsencrypt_dir=settings.letsencrypt_dir, runner=runner),
            DigResolver(settings.dns_resolver, runner),
            dns=dns,
            public_ip=functools.partial(lookup_public_ip, settings.public_ip),
            propagation_timeout=settings.dns_propagation_timeout,
        )

        queue = DeploymentQueue(
            lifecycle,
            network,
            capacity=settings.max_concurrent_deploys,
            store=store,
            bus=bus,
            logs=logs,
        )

        registry = (
            SqliteDatabaseRegistry(settings.registry_path)
            if settings.registry_path
            else InMemoryDatabaseRegistry()
        )
        databases = DatabaseProvisioner(
            runtime,
            PortAllocator(*settings.database_port_range, name="databases"),
            naming,
            data_dir=settings.postgres_data_dir,
            registry=registry,
            postgres_version=settings.postgres_version,
            readiness=PollPolicy(
                interval=settings.database_health_interval,
                max_attempts=settings.database_health_max_attempts,
            ),
        )
        return cls(queue, databases, bus=bus, store=store, logs=logs)

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    async def enqueue_deployment(self, request: DeploymentRequest) -> str:
        return await self.queue.enqueue(request)

    def queue_status(self) -> QueueStatus:
        return self.queue.status()

    async def get_deployment(self, deployment_id: str) -> DeploymentRecord:
        return await self.queue.fetch(deployment_id)

    async def wait_for_deployment(self, deployment_id: str, timeout: float | None = None) -> DeploymentRecord:
        return await self.queue.wait(deployment_id, timeout=timeout)

    async def cancel_deployment(self, deployment_id: str) -> bool:
        return await self.queue.cancel(deployment_id)

    async def list_deployments(self, project: str | None = None, limit: int = 50) -> list[DeploymentRecord]:
        return await self.store.list(project=project, limit=limit)

    def deployment_logs(self, deployment_id: str) -> list[LogEntry]:
        return self.logs.get(deployment_id)

    async def remove_deployment(self, project: str, branch: str) -> RemovalResult:
        """Tear down a deployed branch: container, image, proxy site and DNS record."""
        domain = self.lifecycle.naming.domain(project, branch)
        container_name = await self.lifecycle.remove_container(project, branch)
        await self.network.deprovision(domain)
        logger.info("deployment.removed", project=project, branch=branch, domain=domain)
        return RemovalResult(container_name=container_name, domain=domain)

    async def retry_certificate(self, project: str, branch: str) -> DomainBinding:
        domain = self.lifecycle.naming.domain(project, branch)
        return await self.network.retry_certificate(
            domain, container_name=self.lifecycle.naming.container_name(project, branch)
        )

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    async def create_database(self, name: str, environment: str = "production") -> DatabaseInstance:
        instance = await self.databases.create_instance(name, environment)
        await self._database_event(instance)
        return instance

    def list_databases(self) -> list[DatabaseInstance]:
        return self.databases.list_instances()

    async def get_database_stats(self, instance_id: str) -> DatabaseStats:
        return await self.databases.stats(instance_id)

    async def start_database(self, instance_id: str) -> DatabaseInstance:
        instance = await self.databases.start(instance_id)
        await self._database_event(instance)
        return instance

    async def stop_database(self, instance_id: str) -> DatabaseInstance:
        instance = await self.databases.stop(instance_id)
        await self._database_event(instance)
        return instance

    async def restart_database(self, instance_id: str) -> DatabaseInstance:
        instance = await self.databases.restart(instance_id)
        await self._database_event(instance)
        return instance

    async def delete_database(self, instance_id: str, purge_storage: bool = False) -> None:
        instance = self.databases.get_instance(instance_id)
        await self.databases.delete(instance_id, purge_storage=purge_storage)
        await self._database_event(instance, status="deleted")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """Stop the queue, deliver pending events, then close the bus."""
        await self.queue.shutdown(timeout=timeout)
        try:
            await self.bus.drain(timeout=timeout)
        except TimeoutError:
            logger.warning("platform.events_undelivered", timeout=timeout)
        await self.bus.close()

    async def _database_event(self, instance: DatabaseInstance, status: str | None = None) -> None:
        await self.bus.publish(
            Event(
                event_type="database.status",
                source="databases",
                payload={
                    "id": instance.id,
                    "name": instance.name,
                    "environment": instance.environment,
                    "status": status or instance.status.value,
                },
                correlation_id=instance.id,
            )
        )


__all__ = ["Platform", "RemovalResult"]
