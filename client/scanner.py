"""Find room servers on the local network by probing ``/api/server-info``."""
from __future__ import annotations

import ipaddress
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional

import requests

from shared.netinfo import local_ipv4_addresses
from shared.protocol import DEFAULT_HTTP_PORT

logger = logging.getLogger(__name__)

MAX_SCAN_HOSTS = 1024


@dataclass(slots=True)
class ScanResult:
    host: str
    port: int
    name: str
    users: int
    max_users: int
    can_join: bool

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


def probe(host: str, port: int = DEFAULT_HTTP_PORT, *, timeout: float = 1.5) -> Optional[ScanResult]:
    try:
        response = requests.get(f"http://{host}:{port}/api/server-info", timeout=timeout)
        response.raise_for_status()
        info = response.json()
        return ScanResult(
            host=host,
            port=port,
            name=str(info.get("name", "")),
            users=int(info.get("users", 0)),
            max_users=int(info.get("maxUsers", 0)),
            can_join=bool(info.get("canJoin", False)),
        )
    except (requests.RequestException, ValueError, TypeError, AttributeError):
        logger.debug("No room server at %s:%s", host, port)
        return None


def expand_targets(targets: Iterable[str]) -> list[str]:
    """Turn hosts, CIDR blocks and three-octet prefixes into a host list."""

    hosts: list[str] = []
    for target in targets:
        target = target.strip()
        if not target:
            continue
        if target.count(".") == 2 and "/" not in target:
            target = f"{target}.0/24"
        if "/" in target:
            network = ipaddress.ip_network(target, strict=False)
            if network.num_addresses > MAX_SCAN_HOSTS:
                raise ValueError(f"{target} is too large to scan (>{MAX_SCAN_HOSTS} hosts)")
            hosts.extend(str(address) for address in network.hosts())
        else:
            hosts.append(target)
    return list(dict.fromkeys(hosts))


def default_targets() -> list[str]:
    return [str(ipaddress.ip_network(f"{address}/24", strict=False)) for address in local_ipv4_addresses()]


def scan(
    targets: Iterable[str],
    port: int = DEFAULT_HTTP_PORT,
    *,
    timeout: float = 1.5,
    workers: int = 64,
) -> list[ScanResult]:
    hosts = expand_targets(targets)
    if not hosts:
        return []
    logger.info("Scanning %d hosts on port %d", len(hosts), port)
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(hosts)))) as pool:
        results = pool.map(lambda host: probe(host, port, timeout=timeout), hosts)
        return [result for result in results if result is not None]
