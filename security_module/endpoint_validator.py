"""Endpoint security validator: blocks connections into internal address ranges"""

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

from file_storage.exceptions import EndpointBlocked, InvalidEndpoint
from logger import get_logger

logger = get_logger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
Resolver = Callable[[str], Awaitable[list[str]]]

# Ordered: the first matching range names the category
BLOCKED_RANGES: tuple[tuple[str, str, str], ...] = (
    ("private", "10.0.0.0/8", "Class A private"),
    ("private", "172.16.0.0/12", "Class B private"),
    ("private", "192.168.0.0/16", "Class C private"),
    ("loopback", "127.0.0.0/8", "IPv4 loopback"),
    ("loopback", "::1/128", "IPv6 loopback"),
    ("link_local", "169.254.0.0/16", "IPv4 link-local"),
    ("link_local", "fe80::/10", "IPv6 link-local"),
    ("unique_local", "fc00::/7", "IPv6 unique local"),
    ("unspecified", "0.0.0.0/8", "IPv4 this-network"),
    ("unspecified", "::/128", "IPv6 unspecified"),
)

_NETWORKS = tuple((category, ipaddress.ip_network(cidr)) for category, cidr, _ in BLOCKED_RANGES)


def extract_host(endpoint: str) -> str:
    """
    Host part of an endpoint given as a bare host, ``host:port`` or a full URL.

    >>> extract_host("https://minio.internal:9000/bucket")
    'minio.internal'
    >>> extract_host("[::1]:6379")
    '::1'
    """
    value = (endpoint or "").strip()
    if not value:
        raise InvalidEndpoint("Empty endpoint")

    if "://" in value:
        try:
            host = urlsplit(value).hostname
        except ValueError as e:
            raise InvalidEndpoint(f"Malformed URL: {e}", endpoint) from e
        if not host:
            raise InvalidEndpoint("URL has no host", endpoint)
        return host

    value = value.rsplit("@", 1)[-1].split("/", 1)[0]
    if value.startswith("["):
        host, bracket, _ = value[1:].partition("]")
        if not bracket or not host:
            raise InvalidEndpoint("Unterminated IPv6 literal", endpoint)
        return host
    if value.count(":") == 1:
        host = value.split(":", 1)[0]
        if not host:
            raise InvalidEndpoint("Endpoint has no host", endpoint)
        return host
    # Bare hostname, IPv4 or unbracketed IPv6
    return value


def classify_address(address: IPAddress) -> str | None:
    """Blocked-range category of an address, or None when it is public."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    for category, network in _NETWORKS:
        if address.version == network.version and address in network:
            return category
    return None


async def resolve_host(host: str, timeout: float = 5.0) -> list[str]:
    """All IPv4 and IPv6 addresses a host name resolves to."""
    loop = asyncio.get_running_loop()
    try:
        infos = await asyncio.wait_for(
            loop.getaddrinfo(host, None, type=socket.SOCK_STREAM),
            timeout=timeout,
        )
    except (socket.gaierror, UnicodeError) as e:
        raise InvalidEndpoint(f"Cannot resolve host: {e}", host) from e
    except TimeoutError as e:
        raise InvalidEndpoint("Host lookup timed out", host) from e
    return sorted({info[4][0].split("%", 1)[0] for info in infos})


class EndpointValidator:
    """
    Validates operator-supplied endpoints against the blocked-range table.

    An instance is a pure function of ``allow_local_addresses``; the registry
    builds a new one when the policy changes.
    """

    def __init__(self, allow_local_addresses: bool = False, resolver: Resolver | None = None, timeout: float = 5.0):
        self._allow_local_addresses = allow_local_addresses
        self._timeout = timeout
        self._resolver = resolver

    @property
    def allow_local_addresses(self) -> bool:
        return self._allow_local_addresses

    async def _resolve(self, host: str) -> list[str]:
        if self._resolver is not None:
            return await self._resolver(host)
        return await resolve_host(host, self._timeout)

    async def validate(self, endpoint: str) -> list[str]:
        """
        Check an endpoint before any connection is made.

        Returns:
            Candidate addresses that were checked (empty when local addresses are allowed)

        Raises:
            InvalidEndpoint: If the host cannot be extracted or resolved
            EndpointBlocked: If any candidate address is in a blocked range
        """
        if self._allow_local_addresses:
            return []

        host = extract_host(endpoint)
        try:
            candidates = [ipaddress.ip_address(host)]
        except ValueError:
            resolved = await self._resolve(host)
            if not resolved:
                raise InvalidEndpoint("Host resolved to no addresses", endpoint) from None
            candidates = [ipaddress.ip_address(address) for address in resolved]

        for address in candidates:
            category = classify_address(address)
            if category is not None:
                logger.warning(f"Endpoint blocked: endpoint={endpoint} | address={address} | category={category}")
                raise EndpointBlocked(endpoint, str(address), category)
        return [str(address) for address in candidates]

    @staticmethod
    def blocked_ranges() -> list[str]:
        """Human-readable list of blocked ranges for display."""
        return [f"{cidr} ({description})" for _, cidr, description in BLOCKED_RANGES]
