"""Deployments -- queue, container lifecycle, source checkouts and environment.

Modules:
    models.py      DeploymentRequest, DeploymentRecord, ContainerInstance, DomainBinding
    naming.py      Derived container, image and hostname rules
    source.py      git clone / fetch + hard reset
    env.py         Environment merge and transient env files
    lifecycle.py   Build, start and readiness of one container
    scheduler.py   Bounded-concurrency FIFO queue
    logs.py        Per-deployment step logs
    store.py       Deployment history and environment variable seams
"""

from shipyard.deploy.models import (
    CertificateState,
    ContainerInstance,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    DnsMethod,
    DomainBinding,
)

__all__ = [
    "CertificateState",
    "ContainerInstance",
    "DeploymentRecord",
    "DeploymentRequest",
    "DeploymentStatus",
    "DnsMethod",
    "DomainBinding",
]
