"""
Structured error types for shipyard.

Every failure the orchestration engine can surface is a ``ShipyardError``
subclass carrying a category, a retry hint, structured context and an
optional chained cause. The scheduler relies on the hierarchy to decide
what a failure means for a deployment:

- **Fatal to a deployment:** source fetch, missing build file, image build,
  container start, container exit during the health wait, health timeout,
  port exhaustion, reverse-proxy configuration.
- **Soft:** DNS record management and certificate issuance. These never
  leave the network provisioner; they are recorded on the domain binding.

Architecture:
    ::

        ShipyardError  (category, retryable, context, cause)
        ├── ConfigError
        ├── ProcessError                 external command failed / timed out
        ├── PollCancelledError           cooperative cancellation observed
        ├── NotFoundError
        │   └── DatabaseNotFoundError
        ├── DuplicateNameError
        ├── PortExhaustedError           (RESOURCE)
        ├── DeploymentError              (DEPLOYMENT)
        │   ├── SourceError
        │   ├── MissingBuildFileError
        │   ├── BuildError
        │   ├── StartError
        │   │   └── ContainerExitedError
        │   └── HealthTimeoutError
        └── NetworkError                 (NETWORK)
            ├── ProxyError
            ├── DnsError
            └── CertificateError

Examples:
    >>> err = BuildError("docker build failed").with_context(project="api")
    >>> err.category.value
    'DEPLOYMENT'
    >>> err.to_dict()["context"]
    {'project': 'api'}

Tags:
    error-handling, exception-hierarchy, deployment, provisioning
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"  # Missing or invalid settings
    PROCESS = "PROCESS"  # External command failures
    RESOURCE = "RESOURCE"  # Ports, disk, capacity
    DEPLOYMENT = "DEPLOYMENT"  # Source, build, start, health
    NETWORK = "NETWORK"  # Proxy, DNS, certificates
    DATABASE = "DATABASE"  # Managed database instances
    NOT_FOUND = "NOT_FOUND"
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only non-``None`` fields are emitted by :meth:`to_dict`, so the same
    context object can be used for deployments and database instances.
    """

    deployment_id: str | None = None
    project: str | None = None
    branch: str | None = None
    container: str | None = None
    domain: str | None = None
    instance_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["deployment_id", "project", "branch", "container", "domain", "instance_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ShipyardError(Exception):
    """Base exception for all shipyard errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass a message in the common case.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ShipyardError:
        """Add context to this error (fluent API).

        Usage:
            raise StartError("docker run failed").with_context(
                project="api", container="api-main"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# GENERAL
# =============================================================================


class ConfigError(ShipyardError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG


class ProcessError(ShipyardError):
    """An external command exited non-zero or timed out."""

    default_category = ErrorCategory.PROCESS

    def __init__(
        self,
        message: str,
        *,
        args: list[str] | None = None,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.cmd = args or []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stderr last."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class PollCancelledError(ShipyardError):
    """A bounded polling loop observed a cancellation request."""

    default_category = ErrorCategory.CANCELLED


class NotFoundError(ShipyardError):
    """A requested entity is not registered."""

    default_category = ErrorCategory.NOT_FOUND


class DuplicateNameError(ShipyardError):
    """An entity with the same identity is already registered."""

    default_category = ErrorCategory.DATABASE


class PortExhaustedError(ShipyardError):
    """No free TCP port was found in the scanned range."""

    default_category = ErrorCategory.RESOURCE


# =============================================================================
# DEPLOYMENT ERRORS (fatal to the deployment)
# =============================================================================


class DeploymentError(ShipyardError):
    """Base for failures that mark a deployment ``failed``."""

    default_category = ErrorCategory.DEPLOYMENT


class SourceError(DeploymentError):
    """Cloning or updating the source checkout failed."""

    default_retryable = True


class MissingBuildFileError(DeploymentError):
    """The source tree has no build descriptor (Dockerfile)."""


class BuildError(DeploymentError):
    """The container image build failed."""


class StartError(DeploymentError):
    """The container could not be launched."""


class ContainerExitedError(StartError):
    """The container stopped before it became ready.

    ``logs`` holds the trailing output captured at the time of death.
    """

    def __init__(self, message: str, *, logs: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.logs = logs


class HealthTimeoutError(DeploymentError):
    """A readiness poll ran out of attempts."""

    default_retryable = True

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts


# =============================================================================
# NETWORK ERRORS
# =============================================================================


class NetworkError(ShipyardError):
    """Base for reverse-proxy, DNS and certificate failures."""

    default_category = ErrorCategory.NETWORK


class ProxyError(NetworkError):
    """Writing or reloading reverse-proxy configuration failed."""


class DnsError(NetworkError):
    """The DNS provider API rejected a request or was unreachable."""

    default_retryable = True


class CertificateError(NetworkError):
    """Certificate issuance or renewal failed."""

    default_retryable = True


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class DatabaseNotFoundError(NotFoundError):
    """No managed database instance is registered under the given id."""

    default_category = ErrorCategory.DATABASE


__all__ = [
    "BuildError",
    "CertificateError",
    "ConfigError",
    "ContainerExitedError",
    "DatabaseNotFoundError",
    "DeploymentError",
    "DnsError",
    "DuplicateNameError",
    "ErrorCategory",
    "ErrorContext",
    "HealthTimeoutError",
    "MissingBuildFileError",
    "NetworkError",
    "NotFoundError",
    "PollCancelledError",
    "PortExhaustedError",
    "ProcessError",
    "ProxyError",
    "ShipyardError",
    "SourceError",
    "StartError",
]
