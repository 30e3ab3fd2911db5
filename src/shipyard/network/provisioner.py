"""Public reachability for deployed containers.

``provision()`` runs four steps for a domain:

1. **DNS.** With a DNS provider configured, upsert an ``A`` record pointing
   at this host's public IP. A provider failure degrades to
   ``dns_method=fallback`` with a warning; without a provider the wildcard
   record is assumed (``dns_method=wildcard``).
2. **Reverse proxy.** Write and enable the site, validate, reload. A
   failure here is fatal (:class:`~shipyard.core.errors.ProxyError`).
3. **Propagation.** Poll the resolver once a second for up to
   ``dns_propagation_timeout`` seconds. A timeout is only a warning;
   issuance is still attempted.
4. **Certificate.** Issue through the certificate authority, then reload
   the proxy. A failure sets ``certificate_state=failed`` with the reason
   and leaves the site reachable over HTTP.

Only step 2 can raise a provisioning error. Certificate problems never
fail a deployment. A ``cancel`` event is honoured before the proxy and
certificate steps and during the propagation wait
(:class:`~shipyard.core.errors.PollCancelledError`).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from shipyard.core.errors import CertificateError, DnsError, HealthTimeoutError, PollCancelledError, ProxyError
from shipyard.core.logging import get_logger
from shipyard.deploy.logs import StepLogger
from shipyard.deploy.models import CertificateState, DnsMethod, DomainBinding
from shipyard.network.certs import CertificateAuthority
from shipyard.network.dns import DnsProvider, Resolver
from shipyard.network.proxy import ReverseProxy
from shipyard.runtime.polling import PollPolicy, poll_until

logger = get_logger(__name__)

PublicIpLookup = Callable[[], Awaitable[str | None]]


def _raise_if_cancelled(cancel: asyncio.Event | None, step: str) -> None:
    if cancel is not None and cancel.is_set():
        raise PollCancelledError(f"Deployment cancelled before {step}")


class NetworkProvisioner:
    """Wires DNS, reverse proxy and TLS for one domain at a time.

    Parameters
    ----------
    proxy
        Reverse proxy (nginx in production).
    certificates
        Certificate authority (certbot in production).
    resolver
        Used for the propagation wait.
    dns
        Optional DNS provider; ``None`` means wildcard DNS.
    public_ip
        Async callable returning the address records should point at.
    """

    def __init__(
        self,
        proxy: ReverseProxy,
        certificates: CertificateAuthority,
        resolver: Resolver,
        *,
        dns: DnsProvider | None = None,
        public_ip: PublicIpLookup | None = None,
        propagation_timeout: int = 30,
        propagation_interval: float = 1.0,
    ) -> None:
        self.proxy = proxy
        self.certificates = certificates
        self.resolver = resolver
        self.dns = dns
        self.public_ip = public_ip
        self.propagation_timeout = propagation_timeout
        self.propagation_interval = propagation_interval

    async def provision(
        self,
        domain: str,
        port: int,
        container_name: str,
        steps: StepLogger | None = None,
        cancel: asyncio.Event | None = None,
    ) -> DomainBinding:
        """Make ``domain`` route to ``127.0.0.1:port``.

        Raises:
            ProxyError: The reverse proxy could not be configured.
            PollCancelledError: ``cancel`` was set.
        """
        steps = steps or StepLogger(None, None)
        binding = DomainBinding(domain=domain, port=port, container_name=container_name)

        await steps.info(f"Setting up DNS for {domain}")
        binding.dns_method = await self._setup_dns(domain, steps)

        _raise_if_cancelled(cancel, f"configuring {domain}")
        await steps.info(f"Configuring reverse proxy for {domain} -> 127.0.0.1:{port}")
        await self.proxy.configure_site(domain, port)

        await steps.info(f"Waiting for DNS propagation of {domain}")
        if not await self.wait_for_propagation(domain, cancel=cancel):
            await steps.warning(
                f"DNS for {domain} not propagated after {self.propagation_timeout}s, trying certificate anyway"
            )

        _raise_if_cancelled(cancel, f"issuing a certificate for {domain}")
        await steps.info(f"Requesting TLS certificate for {domain}")
        await self._issue(binding, steps)
        return binding

    async def deprovision(self, domain: str) -> None:
        """Remove the proxy site and, when a provider is configured, the DNS record.

        Certificates are kept so a redeploy can reuse them.
        """
        await self.proxy.remove_site(domain)
        if self.dns is not None:
            try:
                await self.dns.delete_record(domain)
            except DnsError as exc:
                logger.warning("dns.delete_failed", domain=domain, error=exc.message)
        logger.info("network.deprovisioned", domain=domain)

    async def retry_certificate(self, domain: str, port: int = 0, container_name: str = "") -> DomainBinding:
        """Re-run issuance for an already routed domain. Safe to repeat."""
        binding = DomainBinding(domain=domain, port=port, container_name=container_name)
        binding.dns_method = DnsMethod.API if self.dns is not None else DnsMethod.WILDCARD
        await self._issue(binding, StepLogger(None, None))
        return binding

    async def renew_certificate(self, domain: str) -> bool:
        """Renew the certificate of ``domain``; False (with a warning) on failure."""
        try:
            await self.certificates.renew(domain)
        except CertificateError as exc:
            logger.warning("cert.renew_failed", domain=domain, error=exc.message)
            return False
        return True

    async def wait_for_propagation(self, domain: str, cancel: asyncio.Event | None = None) -> bool:
        """True once the resolver returns an address for ``domain``.

        Raises:
            PollCancelledError: ``cancel`` was set.
        """

        async def resolved(attempt: int) -> bool:
            addresses = await self.resolver.resolve(domain)
            if addresses:
                logger.info("dns.resolved", domain=domain, addresses=addresses, attempt=attempt)
                return True
            return False

        policy = PollPolicy(
            interval=self.propagation_interval,
            max_attempts=max(1, self.propagation_timeout),
        )
        try:
            await poll_until(resolved, policy=policy, cancel=cancel, what=f"DNS {domain}")
        except HealthTimeoutError:
            logger.warning("dns.propagation_timeout", domain=domain, seconds=self.propagation_timeout)
            return False
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _setup_dns(self, domain: str, steps: StepLogger) -> DnsMethod:
        if self.dns is None:
            logger.info("dns.wildcard", domain=domain)
            return DnsMethod.WILDCARD
        try:
            ip = await self.public_ip() if self.public_ip is not None else None
            if not ip:
                raise DnsError("Could not determine public IP address")
            await self.dns.upsert_a_record(domain, ip)
        except DnsError as exc:
            await steps.warning(f"DNS setup failed for {domain}, relying on existing records: {exc.message}")
            return DnsMethod.FALLBACK
        return DnsMethod.API

    async def _issue(self, binding: DomainBinding, steps: StepLogger) -> None:
        binding.certificate_state = CertificateState.PENDING
        try:
            await self.certificates.issue(binding.domain)
            await self.proxy.reload()
        except (CertificateError, ProxyError) as exc:
            binding.certificate_state = CertificateState.FAILED
            binding.certificate_error = exc.message
            await steps.warning(
                f"TLS not configured for {binding.domain}, serving HTTP only: {exc.message}"
            )
            return
        binding.certificate_state = CertificateState.ISSUED
        binding.certificate_error = None
        await steps.info(f"TLS certificate active for {binding.domain}")


__all__ = ["NetworkProvisioner", "PublicIpLookup"]
