"""Tests for shipyard.core.errors module."""

import pytest

from shipyard.core.errors import (
    BuildError,
    CertificateError,
    ContainerExitedError,
    DatabaseNotFoundError,
    DeploymentError,
    DnsError,
    ErrorCategory,
    ErrorContext,
    HealthTimeoutError,
    NetworkError,
    NotFoundError,
    PortExhaustedError,
    ProcessError,
    ProxyError,
    ShipyardError,
    SourceError,
    StartError,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_empty_context(self):
        ctx = ErrorContext()
        assert ctx.to_dict() == {}

    def test_only_set_fields_are_emitted(self):
        ctx = ErrorContext(project="api", branch="main")
        assert ctx.to_dict() == {"project": "api", "branch": "main"}

    def test_metadata_is_flattened(self):
        ctx = ErrorContext(container="api-main", metadata={"port": 3001})
        assert ctx.to_dict() == {"container": "api-main", "port": 3001}


class TestShipyardError:
    def test_defaults(self):
        err = ShipyardError("boom")
        assert err.message == "boom"
        assert str(err) == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.cause is None

    def test_with_context_known_and_extra_keys(self):
        err = BuildError("docker build failed").with_context(project="api", pool="apps")
        assert err.context.project == "api"
        assert err.context.metadata == {"pool": "apps"}

    def test_with_context_returns_same_instance(self):
        err = StartError("x")
        assert err.with_context(container="c") is err

    def test_cause_is_chained(self):
        root = OSError("disk full")
        err = SourceError("clone failed", cause=root)
        assert err.__cause__ is root
        assert err.to_dict()["cause"] == "disk full"

    def test_to_dict(self):
        err = BuildError("docker build failed").with_context(project="api")
        assert err.to_dict() == {
            "error_type": "BuildError",
            "message": "docker build failed",
            "category": "DEPLOYMENT",
            "retryable": False,
            "context": {"project": "api"},
        }

    def test_explicit_overrides(self):
        err = ProcessError("timeout", retryable=True, category=ErrorCategory.RESOURCE)
        assert err.retryable is True
        assert err.category == ErrorCategory.RESOURCE


class TestHierarchy:
    @pytest.mark.parametrize(
        "cls,base",
        [
            (SourceError, DeploymentError),
            (BuildError, DeploymentError),
            (ContainerExitedError, StartError),
            (HealthTimeoutError, DeploymentError),
            (ProxyError, NetworkError),
            (DnsError, NetworkError),
            (CertificateError, NetworkError),
            (DatabaseNotFoundError, NotFoundError),
        ],
    )
    def test_subclassing(self, cls, base):
        assert issubclass(cls, base)
        assert issubclass(cls, ShipyardError)

    def test_categories(self):
        assert PortExhaustedError("x").category == ErrorCategory.RESOURCE
        assert DnsError("x").category == ErrorCategory.NETWORK
        assert DatabaseNotFoundError("x").category == ErrorCategory.DATABASE
        assert ProcessError("x").category == ErrorCategory.PROCESS

    def test_soft_network_errors_are_retryable(self):
        assert DnsError("x").retryable is True
        assert CertificateError("x").retryable is True
        assert ProxyError("x").retryable is False


class TestSpecialisedErrors:
    def test_process_error_output(self):
        err = ProcessError("failed", args=["git", "fetch"], returncode=128, stdout="out\n", stderr="fatal\n")
        assert err.cmd == ["git", "fetch"]
        assert err.returncode == 128
        assert err.output == "out\nfatal"

    def test_container_exited_carries_logs(self):
        err = ContainerExitedError("died", logs="Error: Cannot find module")
        assert err.logs == "Error: Cannot find module"
        assert isinstance(err, StartError)

    def test_health_timeout_attempts(self):
        err = HealthTimeoutError("not ready", attempts=60)
        assert err.attempts == 60
        assert err.retryable is True
