"""
Shared pytest fixtures for shipyard tests.

Everything host-facing is replaced by the in-package fakes
(``shipyard.runtime.fakes``): no docker, git, nginx or certbot is needed,
and poll intervals are zero so readiness loops finish instantly.
"""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure shipyard package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shipyard.core.events.memory import InMemoryEventBus
from shipyard.databases.provisioner import DatabaseProvisioner
from shipyard.databases.registry import InMemoryDatabaseRegistry
from shipyard.deploy.lifecycle import ContainerLifecycleManager, ReadinessPolicy
from shipyard.deploy.logs import DeploymentLogStore
from shipyard.deploy.models import DeploymentRequest
from shipyard.deploy.naming import NamingRules
from shipyard.deploy.scheduler import DeploymentQueue
from shipyard.deploy.store import InMemoryDeploymentStore, InMemoryEnvironmentStore
from shipyard.network.provisioner import NetworkProvisioner
from shipyard.platform import Platform
from shipyard.runtime.fakes import (
    FakeCertificateAuthority,
    FakeContainerRuntime,
    FakeProxy,
    FakeResolver,
    FakeSource,
)
from shipyard.runtime.polling import PollPolicy
from shipyard.runtime.ports import PortAllocator

BASE_DOMAIN = "apps.example.com"


def build_request(project: str = "api", branch: str = "main", **kwargs) -> DeploymentRequest:
    kwargs.setdefault("repo_url", f"https://gitlab.com/acme/{project}.git")
    kwargs.setdefault("commit", "abc1234")
    return DeploymentRequest(project_name=project, branch=branch, **kwargs)


@pytest.fixture
def make_request():
    """Factory for deployment requests: ``make_request("api", "dev")``."""
    return build_request


@pytest.fixture
def naming() -> NamingRules:
    return NamingRules(BASE_DOMAIN)


@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def env_store() -> InMemoryEnvironmentStore:
    return InMemoryEnvironmentStore()


@pytest.fixture
def readiness() -> ReadinessPolicy:
    return ReadinessPolicy(
        interval=0.0,
        max_attempts=6,
        running_threshold=3,
        log_probe_after=1,
        log_probe_every=1,
    )


@pytest.fixture
def app_ports() -> PortAllocator:
    return PortAllocator(3000, 3020, is_free=lambda port: True, name="apps")


@pytest.fixture
def lifecycle(runtime, source, app_ports, naming, env_store, readiness, tmp_path) -> ContainerLifecycleManager:
    return ContainerLifecycleManager(
        runtime,
        source,
        app_ports,
        naming,
        deploy_base_path=tmp_path / "apps",
        env_store=env_store,
        default_app_port=3000,
        readiness=readiness,
    )


@pytest.fixture
def proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def certificates() -> FakeCertificateAuthority:
    return FakeCertificateAuthority()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def network(proxy, certificates, resolver) -> NetworkProvisioner:
    return NetworkProvisioner(
        proxy,
        certificates,
        resolver,
        propagation_timeout=3,
        propagation_interval=0.0,
    )


@pytest_asyncio.fixture
async def bus():
    bus = InMemoryEventBus()
    yield bus
    await bus.close()


@pytest.fixture
def deployment_store() -> InMemoryDeploymentStore:
    return InMemoryDeploymentStore()


@pytest.fixture
def queue(lifecycle, network, deployment_store, bus) -> DeploymentQueue:
    return DeploymentQueue(
        lifecycle,
        network,
        capacity=2,
        store=deployment_store,
        bus=bus,
        logs=DeploymentLogStore(bus),
    )


@pytest.fixture
def db_provisioner(runtime, naming, tmp_path) -> DatabaseProvisioner:
    runtime.exec_handler = lambda name, command: (
        "/var/run/postgresql:5432 - accepting connections" if command[0] == "pg_isready" else ""
    )
    return DatabaseProvisioner(
        runtime,
        PortAllocator(5432, 5442, is_free=lambda port: True, name="databases"),
        naming,
        data_dir=tmp_path / "postgres",
        registry=InMemoryDatabaseRegistry(),
        postgres_version="16",
        readiness=PollPolicy(interval=0.0, max_attempts=5),
    )


@pytest.fixture
def platform_factory(runtime, source, proxy, certificates, resolver, naming, env_store, readiness, tmp_path):
    """Builds fresh platforms over one set of fakes and one database registry.

    Each CLI invocation runs in its own event loop, so queues and buses are
    rebuilt per call while containers, proxy sites and databases persist.
    """
    registry = InMemoryDatabaseRegistry()
    runtime.exec_handler = lambda name, command: (
        "/var/run/postgresql:5432 - accepting connections" if command[0] == "pg_isready" else ""
    )

    def build() -> Platform:
        bus = InMemoryEventBus()
        store = InMemoryDeploymentStore()
        logs = DeploymentLogStore(bus)
        lifecycle = ContainerLifecycleManager(
            runtime,
            source,
            PortAllocator(3000, 3020, is_free=lambda port: True, name="apps"),
            naming,
            deploy_base_path=tmp_path / "apps",
            env_store=env_store,
            readiness=readiness,
        )
        network = NetworkProvisioner(proxy, certificates, resolver, propagation_timeout=3, propagation_interval=0.0)
        queue = DeploymentQueue(lifecycle, network, capacity=2, store=store, bus=bus, logs=logs)
        databases = DatabaseProvisioner(
            runtime,
            PortAllocator(5432, 5442, is_free=lambda port: True, name="databases"),
            naming,
            data_dir=tmp_path / "postgres",
            registry=registry,
            readiness=PollPolicy(interval=0.0, max_attempts=5),
        )
        return Platform(queue, databases, bus=bus, store=store, logs=logs)

    return build
