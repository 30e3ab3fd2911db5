"""
shipyard - self-hosted deployment control plane.

Turns branch pushes into running, HTTPS-reachable containers and provisions
managed PostgreSQL instances on a single host.

Packages:
- shipyard.core: errors, settings, logging, events
- shipyard.runtime: processes, ports, polling, container runtime
- shipyard.deploy: deployment queue and container lifecycle
- shipyard.network: DNS, reverse proxy and certificates
- shipyard.databases: managed Postgres instances
- shipyard.platform: the facade wiring it all together
"""

__version__ = "0.1.0"
