"""Host TCP port probing and per-batch reservation."""

from __future__ import annotations

import logging
import socket
from typing import Collection, Iterable, Optional

from swe_sandbox.models.sandbox import PortMapping

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
DEFAULT_MAX_ATTEMPTS = 100


def is_valid_port(port: int) -> bool:
    return MIN_PORT <= port <= MAX_PORT


class PortAllocator:
    """Finds bindable host ports.

    Probing binds and immediately releases a listener, so a port reported
    free can still be taken before the caller binds it. Exclusion only spans
    a single ``allocate_mappings`` call.
    """

    def __init__(self, host: str = "0.0.0.0", max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._host = host
        self._max_attempts = max_attempts

    def is_available(self, port: int) -> bool:
        if not is_valid_port(port):
            return False
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                probe.bind((self._host, port))
                probe.listen(1)
            except OSError:
                return False
        return True

    def find_available(
        self,
        preferred_port: int,
        max_attempts: Optional[int] = None,
        exclude: Collection[int] = (),
    ) -> Optional[int]:
        attempts = self._max_attempts if max_attempts is None else max_attempts
        for offset in range(attempts):
            port = preferred_port + offset
            if port > MAX_PORT:
                break
            if port < MIN_PORT or port in exclude:
                continue
            if self.is_available(port):
                if offset > 0:
                    logger.info("Found alternative port %s for preferred port %s", port, preferred_port)
                return port
        logger.warning(
            "Could not find available port from %s within %s attempts", preferred_port, attempts
        )
        return None

    def allocate_mappings(self, container_ports: Iterable[int]) -> list[PortMapping]:
        mappings: list[PortMapping] = []
        claimed: set[int] = set()
        mapped: set[int] = set()
        for container_port in container_ports:
            if container_port in mapped:
                continue
            if container_port not in claimed and self.is_available(container_port):
                host_port: Optional[int] = container_port
            else:
                host_port = self.find_available(container_port, exclude=claimed)
            if host_port is None:
                logger.warning("Could not allocate host port for container port %s", container_port)
                continue
            claimed.add(host_port)
            mapped.add(container_port)
            mappings.append(PortMapping(container_port=container_port, host_port=host_port))
        return mappings
