"""DNS over TCP and TLS: length-prefixed framing, client and server."""

from __future__ import annotations

import logging
import socket
import ssl
import struct
import threading
import time
from dataclasses import dataclass
from typing import Protocol

import dns.exception
import dns.message

from .bootstrap import _split_host_port
from .dnsmsg import TransportType, new_msg_servfail

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
MAX_MESSAGE_SIZE = 65535
_ACCEPT_POLL = 0.5


class _Exchanger(Protocol):
    def exchange(
        self, request: dns.message.Message, inbound: str, ip: str
    ) -> dns.message.Message | None: ...


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise EOFError(f"connection closed after {len(data)} of {size} bytes")
        data += chunk
    return bytes(data)


def read_message(sock: socket.socket) -> dns.message.Message:
    """Read one length-prefixed DNS message from ``sock``."""
    (length,) = struct.unpack("!H", _recv_exact(sock, 2))
    if length == 0:
        raise ValueError("invalid message length 0")
    return dns.message.from_wire(_recv_exact(sock, length))


def write_message(sock: socket.socket, message: dns.message.Message) -> None:
    """Write ``message`` to ``sock`` with a two-byte big-endian length prefix."""
    wire = message.to_wire()
    if len(wire) > MAX_MESSAGE_SIZE:
        raise ValueError(f"message too large: {len(wire)} bytes")
    sock.sendall(struct.pack("!H", len(wire)) + wire)


def _parse_address(address: str) -> tuple[str, int]:
    host, port = _split_host_port(address)
    return host, int(port)


def _create_listener(host: str, port: int) -> socket.socket:
    if not host and socket.has_dualstack_ipv6():
        return socket.create_server(("", port), family=socket.AF_INET6, dualstack_ipv6=True)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


@dataclass
class TcpOptions:
    """Settings of a stream inbound; cert and key are used for TLS."""

    kind: str = TransportType.TCP
    addr: str = ""
    password: str | None = None
    cert: str = ""
    key: str = ""


class TcpOutbound:
    """Upstream reached over plain TCP or TLS, one connection per query."""

    timeout = DEFAULT_TIMEOUT

    def __init__(self, tag: str, kind: str, address: str) -> None:
        kind = TransportType(kind)
        if kind not in (TransportType.TCP, TransportType.TLS):
            raise ValueError(f"unsupported stream outbound type: {kind.value}")
        self.tag = tag
        self.kind = kind
        self.address = address
        self._host, self._port = _parse_address(address)

    def exchange(self, request: dns.message.Message) -> tuple[dns.message.Message, float]:
        """Send ``request`` and return the reply, carrying the request's id, and the time taken."""
        started = time.monotonic()
        with self._dial() as conn:
            conn.settimeout(self.timeout)
            write_message(conn, request)
            response = read_message(conn)
        response.id = request.id
        return response, time.monotonic() - started

    def _dial(self) -> socket.socket:
        sock = socket.create_connection((self._host, self._port), timeout=self.timeout)
        if self.kind is not TransportType.TLS:
            return sock
        context = ssl.create_default_context()
        try:
            return context.wrap_socket(sock, server_hostname=self._host)
        except BaseException:
            sock.close()
            raise


class TcpInbound:
    """Server answering length-prefixed DNS queries over TCP or TLS."""

    def __init__(self, router: _Exchanger, options: TcpOptions) -> None:
        self.router = router
        self.options = options
        self._kind = TransportType.TCP
        self._listener: socket.socket | None = None
        self._context: ssl.SSLContext | None = None
        self._thread: threading.Thread | None = None
        self._running = threading.Event()

    def start(self) -> tuple[str, int]:
        """Listen and serve in the background; return the bound host and port."""
        try:
            kind = TransportType(self.options.kind)
        except ValueError:
            raise ValueError(f"unknown inbound type: {self.options.kind}") from None
        if kind is TransportType.TCP:
            context = None
        elif kind is TransportType.TLS:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(self.options.cert, self.options.key)
        else:
            raise ValueError(f"unsupported inbound type: {kind.value}")
        host, port = _parse_address(self.options.addr)
        listener = _create_listener(host, port)
        listener.settimeout(_ACCEPT_POLL)
        self._kind = kind
        self._context = context
        self._listener = listener
        self._running.set()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()
        logger.info("[inbound] %s: %s started", kind.value, self.options.addr)
        bound = listener.getsockname()
        return bound[0], bound[1]

    def close(self) -> None:
        """Stop accepting connections and close the listener."""
        self._running.clear()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def _accept_loop(self) -> None:
        listener = self._listener
        while self._running.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._running.is_set():
                    logger.error("accept error: %s", exc)
                return
            threading.Thread(
                target=self._handle_conn, args=(conn, peer[0]), daemon=True
            ).start()
        logger.debug("listener closed, exiting accept loop")

    def _handle_conn(self, conn: socket.socket, ip: str) -> None:
        try:
            with conn:
                conn.settimeout(DEFAULT_TIMEOUT)
                if self._context is not None:
                    with self._context.wrap_socket(conn, server_side=True) as tls_conn:
                        self._serve_conn(tls_conn, ip)
                else:
                    self._serve_conn(conn, ip)
        except (OSError, EOFError, ValueError, dns.exception.DNSException) as exc:
            logger.debug("connection from %s closed: %s", ip, exc)

    def _serve_conn(self, conn: socket.socket, ip: str) -> None:
        while self._running.is_set():
            conn.settimeout(DEFAULT_TIMEOUT)
            request = read_message(conn)
            try:
                response = self.router.exchange(request, self._kind.value, ip)
            except Exception as exc:
                logger.debug("exchange failed: %s", exc)
                response = None
            if response is None:
                response = new_msg_servfail(request)
            write_message(conn, response)