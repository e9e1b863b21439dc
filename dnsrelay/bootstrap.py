"""Resolution of upstream host names through plain bootstrap DNS servers."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections.abc import Iterable

import dns.exception
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype

logger = logging.getLogger(__name__)

DEFAULT_SERVERS = ("223.5.5.5:53", "223.6.6.6:53")
DEFAULT_TTL = 600.0


class BootstrapError(Exception):
    """Raised for bad bootstrap servers or a name that cannot be resolved."""


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"invalid address: {address}")
        return host, rest[1:]
    host, sep, port = address.rpartition(":")
    if not sep or any(c in host for c in ":[]"):
        raise ValueError(f"invalid address: {address}")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return "%" not in host


def parse_servers(servers: Iterable[str]) -> list[str]:
    """Validate bootstrap servers and return them as ``host:port``, adding port 53."""
    servers = list(servers)
    if not servers:
        raise BootstrapError("bootstrap: empty dns server")
    parsed = []
    for index, address in enumerate(servers):
        if not address:
            raise BootstrapError(f"bootstrap: dns[{index}] is empty")
        invalid = BootstrapError(f"bootstrap: dns[{index}] is invalid dns: {address}")
        if "://" in address:
            raise invalid
        try:
            host, port = _split_host_port(address)
        except ValueError:
            address = _join_host_port(address, "53")
            invalid = BootstrapError(f"bootstrap: dns[{index}] is invalid dns: {address}")
            try:
                host, port = _split_host_port(address)
            except ValueError:
                raise invalid from None
        if not _is_ip(host):
            raise invalid
        parsed.append(_join_host_port(host, port))
    return parsed


class Bootstrap:
    """A set of bootstrap servers with a cache of resolved addresses."""

    timeout = 1.0

    def __init__(self, servers: Iterable[str] | None = None, ttl: float = DEFAULT_TTL) -> None:
        self.ttl = ttl
        self.servers = list(DEFAULT_SERVERS)
        self._records: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        if servers is not None:
            self.set_dns(servers)

    def set_dns(self, servers: Iterable[str]) -> None:
        """Replace the bootstrap servers; the old ones stay if validation fails."""
        self.servers = parse_servers(servers)

    def resolve(self, domain: str) -> str:
        """Ask each server in turn for an A record of ``domain``."""
        try:
            query = dns.message.make_query(domain, dns.rdatatype.A)
        except (dns.exception.DNSException, ValueError) as exc:
            raise BootstrapError(f"bootstrap: invalid domain {domain}: {exc}") from exc
        for server in self.servers:
            host, port = _split_host_port(server)
            try:
                response = dns.query.udp(query, host, timeout=self.timeout, port=int(port))
            except (dns.exception.DNSException, OSError, ValueError):
                continue
            if response.rcode() != dns.rcode.NOERROR:
                continue
            for rrset in response.answer:
                if rrset.rdtype == dns.rdatatype.A:
                    return next(iter(rrset)).address
        raise BootstrapError(f"bootstrap: no A record found for {domain}")

    def lookup(self, domain: str) -> str:
        """Return the address of ``domain``, from the cache while it is fresh."""
        with self._lock:
            entry = self._records.get(domain)
        if entry is not None and time.monotonic() - entry[1] < self.ttl:
            logger.info("cache hit domain=%s ip=%s", domain, entry[0])
            return entry[0]
        ip = self.resolve(domain)
        with self._lock:
            self._records[domain] = (ip, time.monotonic())
        logger.info("cache update domain=%s ip=%s", domain, ip)
        return ip