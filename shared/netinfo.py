"""Discover the LAN addresses this host is reachable on."""
from __future__ import annotations

import ipaddress
import logging
import socket

logger = logging.getLogger(__name__)


def _probe_default_route() -> str | None:
    # Connecting a UDP socket sends no packets; it only selects an interface.
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()


def local_ipv4_addresses() -> list[str]:
    """Return non-loopback IPv4 addresses, default-route address first."""

    candidates: list[str] = []
    primary = _probe_default_route()
    if primary:
        candidates.append(primary)
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except socket.gaierror:
        logger.debug("Hostname lookup failed while listing local addresses", exc_info=True)
        infos = []
    for info in infos:
        candidates.append(info[4][0])

    addresses: list[str] = []
    for candidate in candidates:
        try:
            parsed = ipaddress.IPv4Address(candidate)
        except ipaddress.AddressValueError:
            continue
        if parsed.is_loopback or parsed.is_unspecified or candidate in addresses:
            continue
        addresses.append(candidate)
    return addresses
