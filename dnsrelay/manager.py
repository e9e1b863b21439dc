"""Registry of upstream outbounds, built from address URLs."""

from __future__ import annotations

import ipaddress
import logging
import threading
import urllib.parse
from collections.abc import Mapping

import dns.message

from .bootstrap import Bootstrap, BootstrapError
from .dnsmsg import TransportType
from .doh import HttpOutbound
from .tcp import TcpOutbound
from .udp import UdpOutbound

logger = logging.getLogger(__name__)


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _join(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class TransportManager:
    """Holds outbounds by tag; addresses without a scheme are UDP."""

    def __init__(
        self, outbounds: Mapping[str, str] | None = None, bootstrap: Bootstrap | None = None
    ) -> None:
        self.bootstrap = bootstrap if bootstrap is not None else Bootstrap()
        self._lock = threading.RLock()
        self._outbounds: dict = {}
        for tag, address in (outbounds or {}).items():
            self.add(tag, address)

    def add(self, tag: str, address: str) -> None:
        """Create and register an outbound; bad addresses are logged and skipped."""
        if "://" not in address:
            address = "udp://" + address
        try:
            parts = urllib.parse.urlsplit(address)
            port = parts.port
        except ValueError as exc:
            logger.error("invalid outbound addr=%s error=%s", address, exc)
            return
        host = parts.hostname or ""
        port_text = "" if port is None else str(port)
        ip = host
        if not _is_ip(host):
            try:
                ip = self.bootstrap.lookup(host)
            except BootstrapError as exc:
                logger.error("dns bootstrap failed: %s", exc)
                return
        scheme = parts.scheme
        try:
            if scheme in (TransportType.TCP, TransportType.TLS):
                outbound = TcpOutbound(tag, scheme, _join(ip, port_text))
            elif scheme in (TransportType.HTTP, TransportType.HTTPS):
                outbound = HttpOutbound(tag, scheme, address)
            elif scheme == TransportType.UDP:
                outbound = UdpOutbound(tag, scheme, _join(ip, port_text))
            else:
                logger.error("unsupported upstream protocol=%s addr=%s", scheme, address)
                return
        except ValueError as exc:
            logger.error("invalid outbound addr=%s error=%s", address, exc)
            return
        with self._lock:
            self._outbounds[tag] = outbound

    def get(self, tag: str):
        """Return the outbound with ``tag``, or None."""
        with self._lock:
            return self._outbounds.get(tag)

    def remove(self, tag: str) -> None:
        """Forget the outbound with ``tag``."""
        with self._lock:
            self._outbounds.pop(tag, None)

    def exchange(
        self, tag: str, request: dns.message.Message
    ) -> tuple[dns.message.Message, float]:
        """Send ``request`` through the outbound with ``tag``."""
        outbound = self.get(tag)
        if outbound is None:
            raise LookupError(f"outbound:{tag} not found")
        return outbound.exchange(request)