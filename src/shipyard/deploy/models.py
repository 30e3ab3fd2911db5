"""Data models for deployments.

Key Concepts:
    DeploymentRequest: What a push notification asks for. Frozen; the id is
        generated when the request is created.
    DeploymentRecord: Mutable projection of one request moving through
        ``queued → building → success | failed``. Owned by the scheduler
        while in flight and saved to the deployment store on every
        transition.
    ContainerInstance: The running container a successful build produced.
    DomainBinding: Public hostname routed to a container, with the outcome
        of DNS management and certificate issuance.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shipyard.deploy.naming import project_slug


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_deployment_id() -> str:
    return f"deploy_{uuid.uuid4().hex[:12]}"


class DeploymentStatus(str, Enum):
    """Lifecycle of a deployment record."""

    QUEUED = "queued"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED)


class CertificateState(str, Enum):
    """TLS state of a domain binding. ``failed`` never fails a deployment."""

    NONE = "none"
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


class DnsMethod(str, Enum):
    """How the hostname was made resolvable."""

    API = "api"  # record managed through the DNS provider
    WILDCARD = "wildcard"  # no provider configured, wildcard record assumed
    FALLBACK = "fallback"  # provider configured but the call failed


class DeploymentRequest(BaseModel):
    """A request to build and run ``branch`` of ``project_name``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_deployment_id)
    project_name: str = Field(..., min_length=1)
    repo_url: str = Field(..., min_length=1)
    branch: str = Field(..., min_length=1)
    commit: str = ""
    author: str = ""
    commit_message: str = ""
    requested_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        """The (project slug, branch) pair at most one build may own.

        Keyed on the slug because container, image and checkout names are
        derived from it: ``API``/dev and ``api``/dev share one container.
        """
        return (project_slug(self.project_name), self.branch)


class ContainerInstance(BaseModel):
    """A running application container."""

    name: str
    image: str
    host_port: int
    internal_port: int
    environment: dict[str, str] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)


class DomainBinding(BaseModel):
    """A public hostname routed to a container port."""

    domain: str
    port: int
    container_name: str
    certificate_state: CertificateState = CertificateState.NONE
    certificate_error: str | None = None
    dns_method: DnsMethod = DnsMethod.WILDCARD

    @property
    def url(self) -> str:
        scheme = "https" if self.certificate_state == CertificateState.ISSUED else "http"
        return f"{scheme}://{self.domain}"


class DeploymentRecord(BaseModel):
    """Mutable status of one deployment."""

    request: DeploymentRequest
    status: DeploymentStatus = DeploymentStatus.QUEUED
    port: int | None = None
    container_name: str | None = None
    domain: str | None = None
    certificate_state: CertificateState = CertificateState.NONE
    certificate_error: str | None = None
    error: str | None = None
    queued_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    deployed_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def project(self) -> str:
        return self.request.project_name

    @property
    def branch(self) -> str:
        return self.request.branch

    def mark_building(self) -> None:
        self.status = DeploymentStatus.BUILDING
        self.started_at = _utcnow()

    def mark_success(self, container: ContainerInstance, binding: DomainBinding) -> None:
        self.status = DeploymentStatus.SUCCESS
        self.port = container.host_port
        self.container_name = container.name
        self.domain = binding.domain
        self.certificate_state = binding.certificate_state
        self.certificate_error = binding.certificate_error
        self.deployed_at = _utcnow()

    def mark_failed(self, error: str) -> None:
        self.status = DeploymentStatus.FAILED
        self.error = error
        self.failed_at = _utcnow()

    def status_payload(self) -> dict[str, Any]:
        """Payload of the ``deployment.status`` event."""
        return {
            "id": self.id,
            "project": self.project,
            "branch": self.branch,
            "commit": self.request.commit,
            "status": self.status.value,
            "domain": self.domain,
            "port": self.port,
            "error": self.error,
            "certificate_state": self.certificate_state.value,
        }


__all__ = [
    "CertificateState",
    "ContainerInstance",
    "DeploymentRecord",
    "DeploymentRequest",
    "DeploymentStatus",
    "DnsMethod",
    "DomainBinding",
    "new_deployment_id",
]
