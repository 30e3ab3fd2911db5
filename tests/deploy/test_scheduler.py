"""Tests for the bounded-concurrency deployment queue."""

import asyncio

import pytest

from shipyard.core.errors import NotFoundError, ShipyardError
from shipyard.deploy.logs import DeploymentLogStore
from shipyard.deploy.models import CertificateState, DeploymentStatus
from shipyard.deploy.scheduler import DeploymentQueue
from shipyard.network.provisioner import NetworkProvisioner
from shipyard.runtime.fakes import FakeResolver

WAIT = 5.0


async def subscribe_status(bus):
    received = []

    async def handler(event):
        received.append(event.payload)

    await bus.subscribe("deployment.status", handler)
    return received


async def until(predicate, timeout=WAIT):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


# ------------------------------------------------------------------ #
# Basic flow
# ------------------------------------------------------------------ #


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_success(self, queue, bus, certificates, make_request):
        events = await subscribe_status(bus)
        deployment_id = await queue.enqueue(make_request("api", "main"))
        record = await queue.wait(deployment_id, timeout=WAIT)
        await bus.drain(timeout=WAIT)

        assert record.status == DeploymentStatus.SUCCESS
        assert record.container_name == "api-main"
        assert record.domain == "api.apps.example.com"
        assert record.port == 3000
        assert record.certificate_state == CertificateState.ISSUED
        assert certificates.issued == ["api.apps.example.com"]
        assert [e["status"] for e in events] == ["queued", "building", "success"]

    @pytest.mark.asyncio
    async def test_enqueue_returns_before_build(self, queue, runtime, make_request):
        runtime.build_delay = 0.05
        deployment_id = await queue.enqueue(make_request())
        assert queue.get(deployment_id).status == DeploymentStatus.BUILDING
        assert queue.is_building("api", "main")
        await queue.wait(deployment_id, timeout=WAIT)
        assert not queue.is_building("api", "main")

    @pytest.mark.asyncio
    async def test_records_are_persisted(self, queue, deployment_store, make_request):
        deployment_id = await queue.enqueue(make_request())
        await queue.wait(deployment_id, timeout=WAIT)
        stored = await deployment_store.get(deployment_id)
        assert stored.status == DeploymentStatus.SUCCESS
        assert [r.id for r in await deployment_store.list(project="api")] == [deployment_id]

    @pytest.mark.asyncio
    async def test_step_logs(self, queue, make_request):
        deployment_id = await queue.enqueue(make_request())
        await queue.wait(deployment_id, timeout=WAIT)
        messages = [e.message for e in queue.logs.get(deployment_id)]
        assert messages[0] == f"Starting deployment {deployment_id}"
        assert any("Building image api:main" in m for m in messages)
        assert messages[-1] == "Deployment successful: https://api.apps.example.com"

    @pytest.mark.asyncio
    async def test_unknown_deployment(self, queue):
        with pytest.raises(NotFoundError):
            queue.get("deploy_missing")
        with pytest.raises(NotFoundError):
            await queue.wait("deploy_missing")

    def test_capacity_must_be_positive(self, lifecycle, network):
        with pytest.raises(ValueError):
            DeploymentQueue(lifecycle, network, capacity=0)


# ------------------------------------------------------------------ #
# Concurrency
# ------------------------------------------------------------------ #


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_capacity_never_exceeded(self, queue, runtime, make_request):
        runtime.build_delay = 0.05
        ids = [await queue.enqueue(make_request(f"app{i}", "main")) for i in range(6)]
        status = queue.status()
        assert status.active_count == 2
        assert len(status.pending) == 4

        records = await asyncio.gather(*(queue.wait(i, timeout=WAIT) for i in ids))
        assert all(r.status == DeploymentStatus.SUCCESS for r in records)
        assert runtime.max_active_builds == 2
        assert queue.status().active_count == 0

    @pytest.mark.asyncio
    async def test_same_branch_is_serialised(self, queue, runtime, make_request):
        runtime.build_delay = 0.05
        first = await queue.enqueue(make_request("api", "dev", commit="aaa"))
        second = await queue.enqueue(make_request("api", "dev", commit="bbb"))
        other = await queue.enqueue(make_request("web", "main"))

        status = queue.status()
        assert [r.id for r in status.building] == [first, other]
        assert [r.id for r in status.pending] == [second]

        await asyncio.gather(*(queue.wait(i, timeout=WAIT) for i in (first, second, other)))
        builds = [op for op in runtime.calls if op == ("build", "api:dev")]
        assert len(builds) == 2
        assert runtime.containers["api-dev"].env["DEPLOY_COMMIT"] == "bbb"
    @pytest.mark.asyncio
    async def test_project_names_differing_in_case_are_serialised(self, queue, runtime, make_request):
        runtime.build_delay = 0.05
        upper = await queue.enqueue(make_request("API", "dev", commit="aaa"))
        lower = await queue.enqueue(make_request("api", "dev", commit="bbb"))

        assert queue.is_building("api", "dev")
        assert queue.is_building("API", "dev")
        assert [r.id for r in queue.status().pending] == [lower]

        records = await asyncio.gather(*(queue.wait(i, timeout=WAIT) for i in (upper, lower)))
        assert all(r.status == DeploymentStatus.SUCCESS for r in records)
        assert runtime.max_active_builds == 1
        assert runtime.containers["api-dev"].env["DEPLOY_COMMIT"] == "bbb"


    @pytest.mark.asyncio
    async def test_fifo_at_capacity_one(self, lifecycle, network, runtime, make_request):
        queue = DeploymentQueue(lifecycle, network, capacity=1, logs=DeploymentLogStore())
        runtime.build_delay = 0.02
        production = await queue.enqueue(make_request("api", "main"))
        dev = await queue.enqueue(make_request("api", "dev"))
        assert queue.get(dev).status == DeploymentStatus.QUEUED
        await queue.wait(dev, timeout=WAIT)
        builds = [tag for op, tag in runtime.calls if op == "build"]
        assert builds == ["api:main", "api:dev"]
        assert queue.get(production).status == DeploymentStatus.SUCCESS
        assert runtime.max_active_builds == 1


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


class TestFailures:
    @pytest.mark.asyncio
    async def test_source_failure(self, queue, source, bus, make_request):
        events = await subscribe_status(bus)
        request = make_request("api", "main")
        source.failures.add(request.repo_url)
        record = await queue.wait(await queue.enqueue(request), timeout=WAIT)
        await bus.drain(timeout=WAIT)
        assert record.status == DeploymentStatus.FAILED
        assert "Failed to fetch main" in record.error
        assert events[-1]["status"] == "failed"
        assert events[-1]["error"] == record.error

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_other_deployments(self, queue, runtime, make_request):
        runtime.build_failures.add("api:main")
        failed = await queue.enqueue(make_request("api", "main"))
        ok = await queue.enqueue(make_request("web", "main"))
        assert (await queue.wait(failed, timeout=WAIT)).status == DeploymentStatus.FAILED
        assert (await queue.wait(ok, timeout=WAIT)).status == DeploymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_certificate_failure_keeps_success(self, queue, certificates, make_request):
        certificates.failures["api-dev.apps.example.com"] = "too many certificates already issued"
        record = await queue.wait(await queue.enqueue(make_request("api", "dev")), timeout=WAIT)
        assert record.status == DeploymentStatus.SUCCESS
        assert record.certificate_state == CertificateState.FAILED
        assert "too many certificates" in record.certificate_error
        assert any("serving HTTP only" in e.message for e in queue.logs.get(record.id))

    @pytest.mark.asyncio
    async def test_proxy_failure_fails_deployment(self, queue, proxy, make_request):
        proxy.fail_configure = True
        record = await queue.wait(await queue.enqueue(make_request()), timeout=WAIT)
        assert record.status == DeploymentStatus.FAILED
        assert "nginx" in record.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, queue, runtime, make_request):
        async def explode(*args, **kwargs):
            raise RuntimeError("runtime exploded")

        runtime.build_image = explode
        record = await queue.wait(await queue.enqueue(make_request()), timeout=WAIT)
        assert record.status == DeploymentStatus.FAILED
        assert record.error == "runtime exploded"
        assert queue.status().active_count == 0


# ------------------------------------------------------------------ #
# Cancellation and shutdown
# ------------------------------------------------------------------ #


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, queue, runtime, make_request):
        runtime.build_delay = 0.05
        await queue.enqueue(make_request("a", "main"))
        await queue.enqueue(make_request("b", "main"))
        pending = await queue.enqueue(make_request("c", "main"))

        assert await queue.cancel(pending) is True
        record = await queue.wait(pending, timeout=WAIT)
        assert record.status == DeploymentStatus.FAILED
        assert record.error == "cancelled"
        assert ("build", "c:main") not in runtime.calls

    @pytest.mark.asyncio
    async def test_cancel_building(self, queue, runtime, make_request):
        runtime.build_delay = 0.1
        deployment_id = await queue.enqueue(make_request())
        await asyncio.sleep(0.02)
        assert await queue.cancel(deployment_id) is True
        record = await queue.wait(deployment_id, timeout=WAIT)
        assert record.status == DeploymentStatus.FAILED
        assert record.error == "cancelled"
        assert ("run", "api-main") not in runtime.calls
    @pytest.mark.asyncio
    async def test_cancel_during_dns_propagation(
        self, lifecycle, proxy, certificates, deployment_store, make_request
    ):
        resolver = FakeResolver(resolve_all=False)
        network = NetworkProvisioner(
            proxy, certificates, resolver, propagation_timeout=600, propagation_interval=0.01
        )
        queue = DeploymentQueue(lifecycle, network, capacity=1, store=deployment_store)
        deployment_id = await queue.enqueue(make_request())
        await until(lambda: resolver.lookups)

        assert await queue.cancel(deployment_id) is True
        record = await queue.wait(deployment_id, timeout=WAIT)
        assert record.status == DeploymentStatus.FAILED
        assert record.error == "cancelled"
        assert certificates.issued == []
        assert (await deployment_store.get(deployment_id)).status == DeploymentStatus.FAILED


    @pytest.mark.asyncio
    async def test_cancel_terminal_or_unknown(self, queue, make_request):
        deployment_id = await queue.enqueue(make_request())
        await queue.wait(deployment_id, timeout=WAIT)
        assert await queue.cancel(deployment_id) is False
        assert await queue.cancel("deploy_missing") is False

    @pytest.mark.asyncio
    async def test_shutdown(self, queue, runtime, make_request):
        runtime.build_delay = 0.05
        ids = [await queue.enqueue(make_request(f"app{i}", "main")) for i in range(4)]
        await queue.shutdown(timeout=WAIT)

        records = [queue.get(i) for i in ids]
        assert all(r.status.is_terminal for r in records)
        assert [r.error for r in records[2:]] == ["cancelled", "cancelled"]
        with pytest.raises(ShipyardError):
            await queue.enqueue(make_request())


# ------------------------------------------------------------------ #
# Retention of finished records
# ------------------------------------------------------------------ #


class TestRetention:
    @pytest.mark.asyncio
    async def test_evicted_record_served_from_store(self, lifecycle, network, deployment_store, make_request):
        queue = DeploymentQueue(lifecycle, network, capacity=1, store=deployment_store, max_finished=1)
        first = await queue.enqueue(make_request("api", "main"))
        await queue.wait(first, timeout=WAIT)
        second = await queue.enqueue(make_request("web", "main"))
        await queue.wait(second, timeout=WAIT)

        assert queue.get(second).status == DeploymentStatus.SUCCESS
        with pytest.raises(NotFoundError):
            queue.get(first)
        assert (await queue.fetch(first)).status == DeploymentStatus.SUCCESS
        assert (await queue.wait(first, timeout=WAIT)).id == first
        assert await queue.cancel(first) is False

    @pytest.mark.asyncio
    async def test_memory_is_bounded(self, lifecycle, network, deployment_store, make_request):
        queue = DeploymentQueue(lifecycle, network, capacity=2, store=deployment_store, max_finished=3)
        ids = [await queue.enqueue(make_request(f"app{i}", "main")) for i in range(10)]
        records = await asyncio.gather(*(queue.wait(i, timeout=WAIT) for i in ids))
        assert all(r.status == DeploymentStatus.SUCCESS for r in records)

        held = []
        for deployment_id in ids:
            try:
                held.append(queue.get(deployment_id).id)
            except NotFoundError:
                pass
        assert len(held) == 3
        assert len(await deployment_store.list(limit=100)) == 10

    @pytest.mark.asyncio
    async def test_zero_retention_still_reports_outcome(self, lifecycle, network, make_request):
        queue = DeploymentQueue(lifecycle, network, capacity=1, max_finished=0)
        record = await queue.wait(await queue.enqueue(make_request()), timeout=WAIT)
        assert record.status == DeploymentStatus.SUCCESS
        assert queue.status().active_count == 0

    @pytest.mark.asyncio
    async def test_fetch_unknown(self, queue):
        with pytest.raises(NotFoundError):
            await queue.fetch("deploy_missing")

    def test_retention_must_not_be_negative(self, lifecycle, network):
        with pytest.raises(ValueError):
            DeploymentQueue(lifecycle, network, max_finished=-1)


# ------------------------------------------------------------------ #
# Status events
# ------------------------------------------------------------------ #


class TestStatusEvents:
    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_stall_deployments(self, queue, bus, make_request):
        release = asyncio.Event()
        seen = []

        async def slow(event):
            await release.wait()
            seen.append(event.payload["status"])

        await bus.subscribe("deployment.status", slow)
        deployment_id = await asyncio.wait_for(queue.enqueue(make_request()), timeout=1.0)
        record = await queue.wait(deployment_id, timeout=WAIT)
        assert record.status == DeploymentStatus.SUCCESS
        assert seen == []

        release.set()
        await bus.drain(timeout=WAIT)
        assert seen == ["queued", "building", "success"]
