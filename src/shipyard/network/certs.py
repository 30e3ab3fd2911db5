"""TLS certificates through certbot's nginx plugin.

``certbot --nginx`` both obtains the certificate and rewrites the site's
server block to listen on 443 and redirect HTTP, so issuing is a single
command per domain. Re-running it for a domain that already has a
certificate is safe and re-applies the nginx changes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.errors import CertificateError, ProcessError
from shipyard.core.logging import get_logger
from shipyard.runtime.process import CommandRunner, ProcessRunner

logger = get_logger(__name__)


@runtime_checkable
class CertificateAuthority(Protocol):
    """Issues and renews certificates for public hostnames."""

    async def issue(self, domain: str) -> None: ...

    async def renew(self, domain: str) -> None: ...

    def has_certificate(self, domain: str) -> bool: ...


class CertbotAuthority:
    """Drives the ``certbot`` CLI."""

    def __init__(
        self,
        email: str,
        *,
        letsencrypt_dir: Path = Path("/etc/letsencrypt"),
        runner: CommandRunner | None = None,
        certbot: str = "certbot",
        timeout: float = 300.0,
    ) -> None:
        self.email = email
        self.letsencrypt_dir = Path(letsencrypt_dir)
        self.runner = runner or ProcessRunner()
        self.certbot = certbot
        self.timeout = timeout

    def has_certificate(self, domain: str) -> bool:
        return (self.letsencrypt_dir / "live" / domain / "fullchain.pem").exists()

    async def issue(self, domain: str) -> None:
        """Obtain (or re-install) a certificate for ``domain``.

        Raises:
            CertificateError: certbot exited non-zero or timed out.
        """
        if self.has_certificate(domain):
            logger.info("cert.exists_reinstalling", domain=domain)
        args = [
            self.certbot, "--nginx",
            "-d", domain,
            "--non-interactive",
            "--agree-tos",
            "--email", self.email,
            "--redirect",
        ]
        try:
            await self.runner.run(args, timeout=self.timeout)
        except ProcessError as exc:
            raise CertificateError(
                f"certbot failed for {domain}: {exc.output or exc.message}", cause=exc
            ).with_context(domain=domain) from exc
        logger.info("cert.issued", domain=domain)

    async def renew(self, domain: str) -> None:
        try:
            await self.runner.run(
                [self.certbot, "renew", "--cert-name", domain, "--non-interactive"],
                timeout=self.timeout,
            )
        except ProcessError as exc:
            raise CertificateError(
                f"certbot renew failed for {domain}: {exc.output or exc.message}", cause=exc
            ).with_context(domain=domain) from exc
        logger.info("cert.renewed", domain=domain)


__all__ = ["CertbotAuthority", "CertificateAuthority"]
