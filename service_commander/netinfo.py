"""
Service Commander — Host Address Resolution
═══════════════════════════════════════════════════
Picks the address written into service URLs and URL-bearing environment
variables (WEBHOOK_URL, AP_FRONTEND_URL, ...).

Order: configured PUBLIC_HOST → first private IPv4 of a physical-looking
interface → "localhost".
"""

import ipaddress
import logging
import socket
from typing import Dict, List, Optional

import psutil

from .config import PUBLIC_HOST

logger = logging.getLogger(__name__)

# Container bridges and virtual links; their addresses are unreachable from LAN clients
_VIRTUAL_PREFIXES = ("docker", "br-", "veth", "virbr", "cni", "flannel", "lo")


def _ipv4_candidates(interfaces: Dict[str, List]) -> List[str]:
    candidates = []
    for iface in sorted(interfaces):
        if iface.startswith(_VIRTUAL_PREFIXES):
            continue
        for addr in interfaces[iface]:
            if addr.family != socket.AF_INET:
                continue
            try:
                ip = ipaddress.IPv4Address(addr.address)
            except ValueError:
                continue
            if ip.is_loopback or ip.is_link_local:
                continue
            if ip.is_private:
                candidates.append(str(ip))
    return candidates


def resolve_host_ip(public_host: Optional[str] = None) -> str:
    override = PUBLIC_HOST if public_host is None else public_host
    if override:
        return override

    try:
        candidates = _ipv4_candidates(psutil.net_if_addrs())
    except (OSError, psutil.Error) as e:
        logger.warning(f"[Net] Interface discovery failed: {e}")
        candidates = []

    if candidates:
        return candidates[0]
    logger.warning("[Net] No private IPv4 address found, falling back to localhost")
    return "localhost"
