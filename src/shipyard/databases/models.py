"""Data models for managed PostgreSQL instances."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class DatabaseStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


class DatabaseInstance(BaseModel):
    """A provisioned Postgres container and its credentials.

    ``password`` is only populated on the object returned by
    ``create_instance``; every read path returns :meth:`redacted` copies.
    """

    id: str
    name: str
    environment: str = "production"
    container_name: str
    host: str
    port: int
    username: str
    password: str | None = None
    database: str
    storage_path: str
    ssl_mode: str = "prefer"
    status: DatabaseStatus = DatabaseStatus.ACTIVE
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def redacted(self) -> DatabaseInstance:
        return self.model_copy(update={"password": None})

    @property
    def connection_url(self) -> str:
        secret = self.password if self.password else "<password>"
        return f"postgresql://{self.username}:{secret}@{self.host}:{self.port}/{self.database}?sslmode={self.ssl_mode}"

    def public_dict(self) -> dict[str, Any]:
        return self.redacted().model_dump(mode="json", exclude={"password"})


class DatabaseStats(BaseModel):
    """Live statistics of one instance. ``N/A`` fields mean the container is stopped."""

    status: str
    size: str = "N/A"
    connections: int = 0
    cpu: str = "N/A"
    memory: str = "N/A"
    uptime: str = "N/A"

    @classmethod
    def stopped(cls) -> DatabaseStats:
        return cls(status="stopped")


__all__ = ["DatabaseInstance", "DatabaseStats", "DatabaseStatus"]
