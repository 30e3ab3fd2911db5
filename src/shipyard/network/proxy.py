"""Reverse-proxy site management (nginx).

Each deployed domain gets one server block in ``sites-available/<domain>``
with a symlink in ``sites-enabled``. The block proxies port 80 to the
container's host port on the loopback interface; certbot later rewrites
it in place to add the TLS listener and the HTTP redirect.

Any failure here is a :class:`~shipyard.core.errors.ProxyError` and fails
the deployment: a container nobody can reach is not a successful deploy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.errors import ProcessError, ProxyError
from shipyard.core.logging import get_logger
from shipyard.runtime.process import CommandRunner, ProcessRunner

logger = get_logger(__name__)

SITE_TEMPLATE = """\
server {{
    listen 80;
    listen [::]:80;
    server_name {domain};

    location / {{
        proxy_pass http://127.0.0.1:{port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection 'upgrade';
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
        proxy_read_timeout 300s;
        proxy_connect_timeout 75s;
    }}

    client_max_body_size 50M;
}}
"""


def render_site(domain: str, port: int) -> str:
    """Render the HTTP server block for ``domain`` → ``127.0.0.1:port``."""
    return SITE_TEMPLATE.format(domain=domain, port=port)


@runtime_checkable
class ReverseProxy(Protocol):
    """Routes a public hostname to a local port."""

    async def configure_site(self, domain: str, port: int) -> None: ...

    async def remove_site(self, domain: str) -> None: ...

    async def reload(self) -> None: ...


class NginxProxy:
    """Writes nginx site files and validates/reloads the running nginx."""

    def __init__(
        self,
        sites_available: Path,
        sites_enabled: Path,
        runner: CommandRunner | None = None,
        nginx: str = "nginx",
    ) -> None:
        self.sites_available = Path(sites_available)
        self.sites_enabled = Path(sites_enabled)
        self.runner = runner or ProcessRunner()
        self.nginx = nginx

    def site_path(self, domain: str) -> Path:
        return self.sites_available / domain

    def enabled_path(self, domain: str) -> Path:
        return self.sites_enabled / domain

    async def configure_site(self, domain: str, port: int) -> None:
        """Write the site, enable it and reload nginx.

        Raises:
            ProxyError: Writing the file, ``nginx -t`` or the reload failed.
        """
        available = self.site_path(domain)
        enabled = self.enabled_path(domain)
        try:
            self.sites_available.mkdir(parents=True, exist_ok=True)
            self.sites_enabled.mkdir(parents=True, exist_ok=True)
            available.write_text(render_site(domain, port), encoding="utf-8")
            if enabled.is_symlink() or enabled.exists():
                enabled.unlink()
            enabled.symlink_to(available)
        except OSError as exc:
            raise ProxyError(
                f"Cannot write nginx config for {domain}: {exc}", cause=exc
            ).with_context(domain=domain) from exc

        logger.info("proxy.site_written", domain=domain, port=port, path=str(available))
        await self.reload()

    async def remove_site(self, domain: str) -> None:
        """Delete the site files and reload. Missing files are ignored."""
        for path in (self.enabled_path(domain), self.site_path(domain)):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise ProxyError(
                    f"Cannot remove nginx config {path}: {exc}", cause=exc
                ).with_context(domain=domain) from exc
        logger.info("proxy.site_removed", domain=domain)
        await self.reload()

    async def reload(self) -> None:
        """Validate the configuration, then signal nginx to reload."""
        try:
            await self.runner.run([self.nginx, "-t"], timeout=30)
            await self.runner.run([self.nginx, "-s", "reload"], timeout=30)
        except ProcessError as exc:
            raise ProxyError(f"nginx reload failed: {exc.message}", cause=exc) from exc
        logger.debug("proxy.reloaded")


__all__ = ["NginxProxy", "ReverseProxy", "render_site"]
