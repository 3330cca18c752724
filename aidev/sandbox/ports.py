"""
Port Allocator - Reserve one free host TCP port per sandbox.

The OS picks the port: we bind 127.0.0.1:0, read the assigned port back and
close the socket straight away. The port was free at that instant; whether
it is still free when Docker binds it is best-effort, so a bind failure on
container start is reported as a retryable engine error by the caller.
"""

import asyncio
import logging
import socket
from typing import Set

logger = logging.getLogger(__name__)

# Give up if the OS keeps handing back ports we already issued
MAX_PROBES = 32


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an ephemeral port and release it immediately."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class PortAllocator:
    """
    Serializes port allocation across concurrent sandbox creations.

    Ports handed out are remembered until released, so two sandboxes being
    created at the same time never receive the same port even if the OS
    recycles it between probes.
    """

    def __init__(self, host: str = "127.0.0.1"):
        self._host = host
        self._lock = asyncio.Lock()
        self._reserved: Set[int] = set()

    @property
    def reserved(self) -> Set[int]:
        return set(self._reserved)

    async def allocate(self) -> int:
        """
        Reserve a free port.

        Returns:
            Port number in the OS ephemeral range

        Raises:
            OSError: if no unreserved port could be found
        """
        async with self._lock:
            for _ in range(MAX_PROBES):
                port = find_free_port(self._host)
                if port not in self._reserved:
                    self._reserved.add(port)
                    logger.debug(f"Allocated port {port}")
                    return port
            raise OSError("Could not find an unreserved free port")

    def release(self, port: int) -> None:
        """Forget a reservation. Unknown ports are ignored."""
        self._reserved.discard(port)
