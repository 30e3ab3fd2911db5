"""Tests for per-deployment step logs."""

import pytest

from shipyard.core.events.memory import InMemoryEventBus
from shipyard.deploy.logs import DeploymentLogStore, StepLogger


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestDeploymentLogStore:
    @pytest.mark.asyncio
    async def test_add_and_get(self):
        store = DeploymentLogStore()
        await store.add("deploy_1", "info", "Building image api:main")
        await store.add("deploy_1", "error", "Image build failed")
        entries = store.get("deploy_1")
        assert [(e.level, e.message) for e in entries] == [
            ("info", "Building image api:main"),
            ("error", "Image build failed"),
        ]
        assert store.get("deploy_unknown") == []

    @pytest.mark.asyncio
    async def test_bounded_per_deployment(self):
        store = DeploymentLogStore(max_entries=3)
        for i in range(5):
            await store.add("deploy_1", "info", f"line {i}")
        assert [e.message for e in store.get("deploy_1")] == ["line 2", "line 3", "line 4"]

    @pytest.mark.asyncio
    async def test_retention(self):
        clock = FakeClock()
        store = DeploymentLogStore(retention_seconds=60, clock=clock)
        await store.add("deploy_old", "info", "old")
        clock.now += 30
        await store.add("deploy_new", "info", "new")
        clock.now += 45
        assert store.active_deployments() == ["deploy_new"]
        assert store.get("deploy_old") == []

    @pytest.mark.asyncio
    async def test_publishes_log_events(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event):
            received.append(event)

        await bus.subscribe("deployment.log", handler)
        store = DeploymentLogStore(bus)
        await store.add("deploy_1", "warning", "No EXPOSE directive")
        await bus.drain()
        assert len(received) == 1
        payload = received[0].payload
        assert payload["id"] == "deploy_1"
        assert payload["level"] == "warning"
        assert payload["message"] == "No EXPOSE directive"
        assert received[0].correlation_id == "deploy_1"
        await bus.close()


class TestStepLogger:
    @pytest.mark.asyncio
    async def test_writes_to_store(self):
        store = DeploymentLogStore()
        steps = StepLogger(store, "deploy_1")
        await steps.info("a")
        await steps.warning("b")
        await steps.error("c")
        assert [e.level for e in store.get("deploy_1")] == ["info", "warning", "error"]

    @pytest.mark.asyncio
    async def test_without_store(self):
        await StepLogger(None, None).info("only the process log")
