"""End-to-end tests of the Platform facade over the in-memory fakes."""

import pytest
import pytest_asyncio

from shipyard.core.errors import DatabaseNotFoundError, ShipyardError
from shipyard.core.settings import ShipyardSettings
from shipyard.databases.registry import InMemoryDatabaseRegistry, SqliteDatabaseRegistry
from shipyard.deploy.models import CertificateState, DeploymentStatus
from shipyard.network.dns import CloudflareDns
from shipyard.platform import Platform

WAIT = 5.0


@pytest_asyncio.fixture
async def platform(platform_factory):
    platform = platform_factory()
    yield platform
    await platform.shutdown(timeout=WAIT)


# ------------------------------------------------------------------ #
# Deployments
# ------------------------------------------------------------------ #


class TestDeployments:
    @pytest.mark.asyncio
    async def test_deploy_and_inspect(self, platform, make_request):
        deployment_id = await platform.enqueue_deployment(make_request("api", "dev"))
        record = await platform.wait_for_deployment(deployment_id, timeout=WAIT)

        assert record.status == DeploymentStatus.SUCCESS
        assert record.domain == "api-dev.apps.example.com"
        assert (await platform.get_deployment(deployment_id)).status == DeploymentStatus.SUCCESS
        assert [r.id for r in await platform.list_deployments(project="api")] == [deployment_id]
        assert platform.deployment_logs(deployment_id)
        assert platform.queue_status().active_count == 0

    @pytest.mark.asyncio
    async def test_remove_deployment(self, platform, runtime, proxy, make_request):
        await platform.wait_for_deployment(
            await platform.enqueue_deployment(make_request("api", "dev")), timeout=WAIT
        )
        result = await platform.remove_deployment("api", "dev")
        assert result.container_name == "api-dev"
        assert result.domain == "api-dev.apps.example.com"
        assert "api-dev" not in runtime.containers
        assert proxy.sites == {}

    @pytest.mark.asyncio
    async def test_retry_certificate(self, platform, certificates, make_request):
        certificates.failures["api.apps.example.com"] = "rate limited"
        record = await platform.wait_for_deployment(
            await platform.enqueue_deployment(make_request("api", "main")), timeout=WAIT
        )
        assert record.certificate_state == CertificateState.FAILED

        certificates.failures.clear()
        binding = await platform.retry_certificate("api", "main")
        assert binding.domain == "api.apps.example.com"
        assert binding.container_name == "api-main"
        assert binding.certificate_state == CertificateState.ISSUED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, platform):
        assert await platform.cancel_deployment("deploy_missing") is False


# ------------------------------------------------------------------ #
# Databases
# ------------------------------------------------------------------ #


class TestDatabases:
    @pytest.mark.asyncio
    async def test_lifecycle_publishes_events(self, platform):
        events = []

        async def handler(event):
            events.append(event.payload["status"])

        await platform.bus.subscribe("database.*", handler)
        instance = await platform.create_database("orders", "staging")
        assert instance.password

        assert [i.id for i in platform.list_databases()] == [instance.id]
        await platform.stop_database(instance.id)
        stats = await platform.get_database_stats(instance.id)
        assert stats.status == "stopped"
        await platform.start_database(instance.id)
        await platform.restart_database(instance.id)
        await platform.delete_database(instance.id)
        await platform.bus.drain(timeout=WAIT)

        assert events == ["active", "stopped", "active", "active", "deleted"]
        with pytest.raises(DatabaseNotFoundError):
            await platform.get_database_stats(instance.id)


# ------------------------------------------------------------------ #
# Wiring and shutdown
# ------------------------------------------------------------------ #


class TestFromSettings:
    def test_wildcard_dns_and_memory_registry(self, tmp_path):
        settings = ShipyardSettings(
            base_domain="apps.example.com",
            deploy_base_path=tmp_path / "apps",
            postgres_data_dir=tmp_path / "pg",
            max_concurrent_deploys=4,
        )
        platform = Platform.from_settings(settings)
        assert platform.network.dns is None
        assert platform.queue.capacity == 4
        assert platform.lifecycle.naming.domain("api", "dev") == "api-dev.apps.example.com"
        assert isinstance(platform.databases.registry, InMemoryDatabaseRegistry)

    def test_cloudflare_and_sqlite_registry(self, tmp_path):
        settings = ShipyardSettings(
            base_domain="apps.example.com",
            cloudflare_api_token="cf-token",
            registry_path=tmp_path / "registry.db",
            deploy_base_path=tmp_path / "apps",
            postgres_data_dir=tmp_path / "pg",
        )
        platform = Platform.from_settings(settings)
        assert isinstance(platform.network.dns, CloudflareDns)
        assert isinstance(platform.databases.registry, SqliteDatabaseRegistry)
        platform.databases.registry.close()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_rejects_work_after_shutdown(self, platform_factory, make_request):
        platform = platform_factory()
        await platform.shutdown(timeout=WAIT)
        with pytest.raises(ShipyardError):
            await platform.enqueue_deployment(make_request())
