"""Persistence seams for deployment history and environment variables.

The engine does not own the project database. It saves deployment records
through :class:`DeploymentStore` and reads per-project-per-branch variables
through :class:`EnvironmentStore`; the host application plugs in its own
implementations. The in-memory versions here back the CLI and the tests.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from shipyard.deploy.models import DeploymentRecord


@runtime_checkable
class DeploymentStore(Protocol):
    """Receives every deployment record transition."""

    async def save(self, record: DeploymentRecord) -> None: ...

    async def get(self, deployment_id: str) -> DeploymentRecord | None: ...

    async def list(self, project: str | None = None, limit: int = 50) -> list[DeploymentRecord]: ...


@runtime_checkable
class EnvironmentStore(Protocol):
    """Source of persisted environment variables."""

    async def get_variables(self, project: str, branch: str) -> dict[str, str]: ...


class InMemoryDeploymentStore:
    """Keeps copies of records, newest first on listing."""

    def __init__(self) -> None:
        self._records: dict[str, DeploymentRecord] = {}

    async def save(self, record: DeploymentRecord) -> None:
        self._records[record.id] = record.model_copy(deep=True)

    async def get(self, deployment_id: str) -> DeploymentRecord | None:
        record = self._records.get(deployment_id)
        return record.model_copy(deep=True) if record else None

    async def list(self, project: str | None = None, limit: int = 50) -> list[DeploymentRecord]:
        records = [
            r for r in self._records.values() if project is None or r.project == project
        ]
        records.sort(key=lambda r: r.queued_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]


class InMemoryEnvironmentStore:
    """Variables keyed by (project, branch)."""

    def __init__(self, variables: dict[tuple[str, str], dict[str, str]] | None = None) -> None:
        self._variables = {key: dict(value) for key, value in (variables or {}).items()}

    def set_variables(self, project: str, branch: str, variables: dict[str, str]) -> None:
        self._variables[(project, branch)] = dict(variables)

    async def get_variables(self, project: str, branch: str) -> dict[str, str]:
        return dict(self._variables.get((project, branch), {}))


__all__ = [
    "DeploymentStore",
    "EnvironmentStore",
    "InMemoryDeploymentStore",
    "InMemoryEnvironmentStore",
]
