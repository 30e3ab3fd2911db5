"""Runtime settings for the shipyard control plane.

Every tunable of the orchestration engine lives on ``ShipyardSettings``:
paths on the host, port ranges, polling cadences, DNS and certificate
integration, database defaults. Values come from ``SHIPYARD_*`` environment
variables or a ``.env`` file in the working directory.

Examples:
    >>> from shipyard.core.settings import ShipyardSettings
    >>> s = ShipyardSettings(base_domain="apps.example.com")
    >>> s.max_concurrent_deploys
    3

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shipyard.core.errors import ConfigError


class ShipyardSettings(BaseSettings):
    """Settings for the deployment engine.

    Fields
    ──────
    base_domain            : Suffix for generated app and database hostnames
    deploy_base_path       : Parent directory of per-project source checkouts
    max_concurrent_deploys : Worker slots of the deployment queue
    app_port_range         : Host ports handed to application containers
    database_port_range    : Host ports handed to managed Postgres instances
    cloudflare_api_token   : Enables DNS-API record management when set
    ssl_email              : Contact address passed to certbot
    """

    model_config = SettingsConfigDict(
        env_prefix="SHIPYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Deployments ──────────────────────────────────────────────
    base_domain: str = "localhost"
    deploy_base_path: Path = Field(
        default_factory=lambda: Path.home() / ".shipyard" / "apps",
        description="Parent directory for source checkouts",
    )
    max_concurrent_deploys: int = Field(default=3, ge=1)
    default_app_port: int = 3000
    production_branches: list[str] = Field(default_factory=lambda: ["main", "master"])
    git_access_token: str | None = None

    # ── Ports ────────────────────────────────────────────────────
    app_port_range: tuple[int, int] = (3000, 4000)
    database_port_range: tuple[int, int] = (5432, 6432)

    # ── Container readiness ──────────────────────────────────────
    health_interval: float = Field(default=1.0, gt=0)
    health_max_attempts: int = Field(default=60, ge=1)
    health_running_threshold: float = 30.0  # seconds running without a healthcheck
    health_log_probe_after: float = 15.0  # seconds before log probing starts
    health_log_probe_every: int = 5  # probe logs every N attempts

    # ── Network ──────────────────────────────────────────────────
    cloudflare_api_token: str | None = None
    public_ip: str | None = None
    dns_propagation_timeout: int = 30
    dns_resolver: str = "8.8.8.8"
    ssl_email: str = "admin@localhost"
    nginx_sites_available: Path = Path("/etc/nginx/sites-available")
    nginx_sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    letsencrypt_dir: Path = Path("/etc/letsencrypt")

    # ── Databases ────────────────────────────────────────────────
    postgres_version: str = "16"
    postgres_data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".shipyard" / "postgres",
        description="Parent directory of database storage volumes",
    )
    database_health_interval: float = 2.0
    database_health_max_attempts: int = 60
    registry_path: Path | None = None  # SQLite registry; in-memory when unset

    # ── Runtime ──────────────────────────────────────────────────
    docker_binary: str = "docker"
    log_level: str = "INFO"
    log_format: str = "auto"  # auto | json | console

    @model_validator(mode="after")
    def _check_ranges(self) -> ShipyardSettings:
        for label, (start, end) in (
            ("app_port_range", self.app_port_range),
            ("database_port_range", self.database_port_range),
        ):
            if start > end:
                raise ValueError(f"{label} start {start} is greater than end {end}")
        return self

    @property
    def dns_api_enabled(self) -> bool:
        """True when DNS records are managed through the Cloudflare API."""
        return bool(self.cloudflare_api_token)

    def attempts_for(self, seconds: float) -> int:
        """Convert a duration into a number of health poll attempts."""
        return max(1, round(seconds / self.health_interval))


@lru_cache
def get_settings() -> ShipyardSettings:
    """Return the process-wide settings instance.

    Raises:
        ConfigError: A ``SHIPYARD_*`` variable or ``.env`` entry is invalid.
    """
    try:
        return ShipyardSettings()
    except ValidationError as exc:
        problems = "; ".join(_describe(error) for error in exc.errors())
        raise ConfigError(f"Invalid configuration: {problems}", cause=exc) from exc


def _describe(error: dict) -> str:
    if not error["loc"]:
        return error["msg"]
    variable = "SHIPYARD_" + str(error["loc"][0]).upper()
    return f"{variable}: {error['msg']}"


__all__ = ["ShipyardSettings", "get_settings"]
