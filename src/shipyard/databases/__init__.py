"""Managed PostgreSQL instances: models, registry and provisioner."""

from shipyard.databases.models import DatabaseInstance, DatabaseStats, DatabaseStatus

__all__ = ["DatabaseInstance", "DatabaseStats", "DatabaseStatus"]
