"""Host port allocation.

Application and database containers publish one host port each. Scanning
for a free port and binding it in ``docker run`` are two steps with an
``await`` in between, so concurrent deployments would happily pick the
same port. :class:`PortAllocator` closes that gap: scans are serialised by
an ``asyncio.Lock`` and every returned port stays in a reservation set
until the caller releases it (after the container started or failed).

Example::

    allocator = PortAllocator(3000, 4000)
    port = await allocator.allocate()
    try:
        await runtime.run_container(..., ports={port: 8080})
    finally:
        allocator.release(port)
"""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable

from shipyard.core.errors import PortExhaustedError
from shipyard.core.logging import get_logger

logger = get_logger(__name__)


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """Return True when ``port`` can be bound on ``host`` right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out distinct, currently-bindable ports from an inclusive range."""

    def __init__(
        self,
        start: int,
        end: int,
        *,
        is_free: Callable[[int], bool] = is_port_free,
        name: str = "ports",
    ) -> None:
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self.name = name
        self._is_free = is_free
        self._reserved: set[int] = set()
        self._lock = asyncio.Lock()

    async def allocate(self) -> int:
        """Reserve and return the lowest free port in the range.

        Raises:
            PortExhaustedError: Every port is reserved or bound.
        """
        async with self._lock:
            for port in range(self.start, self.end + 1):
                if port in self._reserved:
                    continue
                if not self._is_free(port):
                    continue
                self._reserved.add(port)
                logger.debug("port.allocated", pool=self.name, port=port)
                return port
        raise PortExhaustedError(
            f"No free port in range {self.start}-{self.end}"
        ).with_context(pool=self.name)

    def release(self, port: int) -> None:
        """Drop a reservation. Unknown ports are ignored."""
        self._reserved.discard(port)

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)


__all__ = ["PortAllocator", "is_port_free"]
