"""
Startup address registration with the naming service.

Each hostname in the domain map is announced independently and in
parallel. Failures are logged and reported, never raised: serving traffic
does not depend on registration succeeding.
"""
import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Optional

import psutil

from .credential_client import CredentialClient
from .errors import CredentialError


logger = logging.getLogger(__name__)


@dataclass
class AnnounceResult:
    """Outcome of one hostname's registration."""

    hostname: str
    address: str
    success: bool
    ack: Optional[str] = None
    error: Optional[str] = None


async def announce_one(client: CredentialClient, hostname: str, address: str) -> AnnounceResult:
    try:
        ack = await client.announce(hostname, address)
    except CredentialError as e:
        logger.warning("[TLS-ANNOUNCE] Failed to register %s -> %s: %s", hostname, address, e.describe())
        return AnnounceResult(hostname, address, success=False, error=str(e))

    logger.info("[TLS-ANNOUNCE] Registered %s -> %s (%s)", hostname, address, ack)
    return AnnounceResult(hostname, address, success=True, ack=ack)


async def announce_all(client: CredentialClient, domain_map: dict[str, str]) -> list[AnnounceResult]:
    """
    Announce every hostname/address pair concurrently.

    Returns:
        One AnnounceResult per domain map entry, in map order
    """
    if not domain_map:
        logger.info("[TLS-ANNOUNCE] No domains to announce")
        return []

    results = await asyncio.gather(
        *(announce_one(client, hostname, address) for hostname, address in domain_map.items())
    )
    failed = sum(1 for r in results if not r.success)
    if failed:
        logger.warning("[TLS-ANNOUNCE] %s of %s announcements failed", failed, len(results))
    return list(results)


def is_private_ipv4(address: str) -> bool:
    """Check for 10/8, 172.16/12 or 192.168/16."""
    try:
        ip = ipaddress.IPv4Address(address)
    except ipaddress.AddressValueError:
        return False
    return any(
        ip in ipaddress.IPv4Network(net)
        for net in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
    )


def local_private_addresses() -> list[str]:
    """Private IPv4 addresses across all network interfaces."""
    addresses = set()
    for interface, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET and is_private_ipv4(addr.address):
                logger.debug("[TLS-ANNOUNCE] Found %s on %s", addr.address, interface)
                addresses.add(addr.address)
    return sorted(addresses)


def default_domain_map(domain_name: str, addresses: Optional[list[str]] = None) -> dict[str, str]:
    """
    Build a domain map naming each private address under domain_name.

    Example:
        default_domain_map("lan.example.com", ["192.168.1.123"])
        -> {"192-168-1-123.lan.example.com": "192.168.1.123"}
    """
    if addresses is None:
        addresses = local_private_addresses()
    domain_name = domain_name.strip().strip(".").lower()
    return {
        f"{address.replace('.', '-')}.{domain_name}": address
        for address in addresses
        if is_private_ipv4(address)
    }
