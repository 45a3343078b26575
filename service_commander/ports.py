"""
Service Commander — Port Allocator
═══════════════════════════════════════════════════
Finds the lowest free host port at or above a baseline by reading the
ports currently published by containers (running and stopped) from the
Docker daemon. No registry, no persistent state.

Known gap: ports held by non-container host processes are not seen; the
runtime then rejects the bind and the deploy fails with PortBindConflict.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Set

from .config import MAX_PORT, SERIALIZE_PORT_ALLOCATION
from .errors import RuntimeAPIError
from .runtime import RuntimeClient

logger = logging.getLogger(__name__)

# Shared by every allocator in the process
_allocation_lock = threading.Lock()


def published_ports(attrs: Dict) -> Set[int]:
    """Host ports a container holds, from live bindings and its host config."""
    ports: Set[int] = set()
    live = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    configured = (attrs.get("HostConfig") or {}).get("PortBindings") or {}
    for bindings in list(live.values()) + list(configured.values()):
        for binding in bindings or []:
            host_port = (binding or {}).get("HostPort")
            if host_port and str(host_port).isdigit():
                ports.add(int(host_port))
    return ports


class PortAllocator:

    def __init__(self, runtime: RuntimeClient, serialize: bool = SERIALIZE_PORT_ALLOCATION):
        self.runtime = runtime
        self.serialize = serialize

    def used_ports(self) -> Set[int]:
        used: Set[int] = set()
        for attrs in self.runtime.list_containers(all=True):
            used |= published_ports(attrs)
        return used

    def find_available_port(self, baseline: int) -> int:
        used = self.used_ports()
        port = baseline
        while port in used:
            port += 1
        if port > MAX_PORT:
            raise RuntimeAPIError(f"No free host port at or above {baseline}")
        if port != baseline:
            logger.info(f"[Ports] {baseline} taken, using {port}")
        return port

    @contextmanager
    def allocation(self) -> Iterator[None]:
        """
        Critical section spanning "observe ports → create → start".
        No-op when serialization is disabled.
        """
        if not self.serialize:
            yield
            return
        with _allocation_lock:
            yield
