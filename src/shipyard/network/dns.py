"""DNS record management and resolution checks.

Two concerns live here:

- :class:`CloudflareDns` manages ``A`` records through the Cloudflare v4
  API with ``httpx``. The zone is taken from the last two labels of the
  hostname (``api-dev.apps.example.com`` → ``example.com``). Records are
  DNS-only (``proxied: false``) with automatic TTL.
- :class:`DigResolver` asks a public resolver whether a name already
  resolves, which is what certificate issuance needs before it can pass the
  HTTP-01 challenge.

Without a Cloudflare token nothing is created: a wildcard record for the
base domain is assumed to exist.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from shipyard.core.errors import DnsError, ProcessError
from shipyard.core.logging import get_logger
from shipyard.runtime.process import CommandRunner, ProcessRunner

logger = get_logger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
PUBLIC_IP_URL = "https://api.ipify.org?format=json"


@runtime_checkable
class DnsProvider(Protocol):
    """Creates and deletes address records for deployment hostnames."""

    async def upsert_a_record(self, name: str, ip: str) -> str: ...

    async def delete_record(self, name: str) -> str: ...


@runtime_checkable
class Resolver(Protocol):
    """Looks up the addresses a hostname currently resolves to."""

    async def resolve(self, name: str) -> list[str]: ...


def zone_name(hostname: str) -> str:
    """Return the registrable zone of ``hostname`` (its last two labels)."""
    return ".".join(hostname.split(".")[-2:])


class CloudflareDns:
    """Cloudflare v4 API client for ``A`` records.

    Parameters
    ----------
    api_token
        Bearer token with ``Zone.DNS`` edit permission.
    transport
        Optional ``httpx`` transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = CLOUDFLARE_API_BASE,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_token = api_token
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self._api_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await client.request(method, path, params=params, json=json)
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise DnsError(f"Cloudflare API request failed: {exc}", cause=exc) from exc
        if not body.get("success"):
            errors = body.get("errors") or []
            message = errors[0].get("message") if errors else f"HTTP {response.status_code}"
            raise DnsError(f"Cloudflare API error: {message}")
        return body.get("result")

    async def _zone_id(self, client: httpx.AsyncClient, hostname: str) -> str:
        zone = zone_name(hostname)
        zones = await self._request(client, "GET", "/zones", params={"name": zone})
        if not zones:
            raise DnsError(f"Zone not found for domain: {zone}").with_context(domain=hostname)
        return zones[0]["id"]

    async def _find_record(self, client: httpx.AsyncClient, zone_id: str, name: str) -> dict[str, Any] | None:
        records = await self._request(
            client, "GET", f"/zones/{zone_id}/dns_records", params={"name": name}
        )
        return records[0] if records else None

    async def upsert_a_record(self, name: str, ip: str) -> str:
        """Create or update the ``A`` record for ``name``; returns ``created`` or ``updated``."""
        payload = {"type": "A", "name": name, "content": ip, "ttl": 1, "proxied": False}
        async with self._client() as client:
            zone_id = await self._zone_id(client, name)
            existing = await self._find_record(client, zone_id, name)
            if existing:
                await self._request(
                    client, "PUT", f"/zones/{zone_id}/dns_records/{existing['id']}", json=payload
                )
                action = "updated"
            else:
                await self._request(client, "POST", f"/zones/{zone_id}/dns_records", json=payload)
                action = "created"
        logger.info("dns.record_upserted", domain=name, ip=ip, action=action)
        return action

    async def delete_record(self, name: str) -> str:
        """Delete the record for ``name``; returns ``deleted`` or ``not_found``."""
        async with self._client() as client:
            zone_id = await self._zone_id(client, name)
            existing = await self._find_record(client, zone_id, name)
            if not existing:
                logger.info("dns.record_not_found", domain=name)
                return "not_found"
            await self._request(client, "DELETE", f"/zones/{zone_id}/dns_records/{existing['id']}")
        logger.info("dns.record_deleted", domain=name)
        return "deleted"


async def lookup_public_ip(
    fallback: str | None = None,
    *,
    url: str = PUBLIC_IP_URL,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """Return this host's public IPv4 address, or ``fallback`` when the lookup fails."""
    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()["ip"]
    except (httpx.HTTPError, ValueError, KeyError) as exc:
        logger.warning("dns.public_ip_lookup_failed", error=str(exc), fallback=fallback)
        return fallback


class DigResolver:
    """Resolves names with ``dig +short <name> @<nameserver>``."""

    def __init__(self, nameserver: str = "8.8.8.8", runner: CommandRunner | None = None) -> None:
        self.nameserver = nameserver
        self.runner = runner or ProcessRunner()

    async def resolve(self, name: str) -> list[str]:
        try:
            result = await self.runner.run(
                ["dig", "+short", name, f"@{self.nameserver}"], timeout=10, check=False
            )
        except ProcessError as exc:
            logger.debug("dns.dig_failed", domain=name, error=exc.message)
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]


__all__ = [
    "CloudflareDns",
    "DigResolver",
    "DnsProvider",
    "Resolver",
    "lookup_public_ip",
    "zone_name",
]
