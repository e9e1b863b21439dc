"""DNS over UDP: a one-shot client and a datagram server."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any

import dns.exception
import dns.message

from .bootstrap import _split_host_port
from .dnsmsg import TransportType

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = ":53"
_BUFFER_SIZE = 4096


def _parse_address(address: str) -> tuple[str, int]:
    host, port = _split_host_port(address)
    return host, int(port)


def _bind(host: str, port: int) -> socket.socket:
    dual = not host and socket.has_dualstack_ipv6()
    family = socket.AF_INET6 if dual or ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        if dual:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        sock.bind((host, port))
    except BaseException:
        sock.close()
        raise
    return sock


def _client_ip(host: str) -> str:
    try:
        address = ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return host
    mapped = getattr(address, "ipv4_mapped", None)
    return str(mapped or address)


@dataclass
class UdpOptions:
    """Settings of the UDP inbound; an empty address means ``:53``."""

    kind: str = TransportType.UDP
    addr: str = ""


class UdpOutbound:
    """Upstream reached with a single UDP datagram per query."""

    timeout = 3.0

    def __init__(self, tag: str, kind: str, address: str) -> None:
        self.tag = tag
        self.kind = kind
        self.address = address
        self._host, self._port = _parse_address(address)

    def exchange(self, request: dns.message.Message) -> tuple[dns.message.Message, float]:
        """Send ``request`` and return the reply, carrying the request's id, and the time taken."""
        started = time.monotonic()
        family, socktype, proto, _, sockaddr = socket.getaddrinfo(
            self._host, self._port, type=socket.SOCK_DGRAM
        )[0]
        with socket.socket(family, socktype, proto) as sock:
            sock.settimeout(self.timeout)
            sock.connect(sockaddr)
            sock.send(request.to_wire())
            data = sock.recv(_BUFFER_SIZE)
        response = dns.message.from_wire(data)
        response.id = request.id
        return response, time.monotonic() - started


class UdpInbound:
    """Server answering DNS queries arriving as UDP datagrams."""

    def __init__(self, router: Any, options: UdpOptions | None = None) -> None:
        self.router = router
        self.options = options or UdpOptions()
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()

    def start(self) -> tuple[str, int]:
        """Bind and serve in the background; return the bound host and port."""
        address = self.options.addr or DEFAULT_ADDRESS
        self._sock = _bind(*_parse_address(address))
        self._sock.settimeout(0.5)
        self._closed.clear()
        self._thread = threading.Thread(target=self._serve, args=(self._sock,), daemon=True)
        self._thread.start()
        logger.info("UDP inbound started addr=%s", address)
        return self._sock.getsockname()[:2]

    def close(self) -> None:
        """Stop serving and close the socket."""
        self._closed.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _serve(self, sock: socket.socket) -> None:
        while not self._closed.is_set():
            try:
                data, peer = sock.recvfrom(_BUFFER_SIZE)
            except (socket.timeout, ConnectionResetError):
                continue
            except OSError as exc:
                if not self._closed.is_set():
                    logger.warning("UDP read failed: %s", exc)
                return
            threading.Thread(
                target=self._handle_packet, args=(sock, data, peer), daemon=True
            ).start()

    def _handle_packet(self, sock: socket.socket, data: bytes, peer: tuple) -> None:
        try:
            request = dns.message.from_wire(data)
            response = self.router.exchange(request, str(self.options.kind), _client_ip(peer[0]))
            if response is not None:
                sock.sendto(response.to_wire(), peer)
        except Exception as exc:
            logger.warning("UDP request from %s failed: %s", peer[0], exc)