"""DNS over HTTP(S): request parsing, client address discovery, client and server."""

from __future__ import annotations

import base64
import ipaddress
import logging
import re
import ssl
import threading
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

import dns.exception
import dns.message

from .bootstrap import _split_host_port
from .dnsmsg import TransportType, new_msg_servfail

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DNS_MESSAGE_TYPE = "application/dns-message"
QUERY_PATH = "/dns-query"
_BASE64_URL = re.compile(r"[A-Za-z0-9_-]*")


class _Exchanger(Protocol):
    def exchange(
        self, request: dns.message.Message, inbound: str, ip: str
    ) -> dns.message.Message | None: ...


@dataclass
class HttpOptions:
    """Settings of an HTTP(S) inbound; cert and key are used for HTTPS."""

    kind: str = TransportType.HTTP
    domain: str = ""
    addr: str = ""
    cert: str = ""
    key: str = ""


class HttpStatusError(Exception):
    """An HTTP exchange that ends with a status other than success."""

    def __init__(self, status: int, message: str | None = None) -> None:
        self.status = int(status)
        super().__init__(message or f"unexpected status code: {self.status}")


def _header(headers: Any, name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


def _decode_raw_url(text: str) -> bytes:
    if not _BASE64_URL.fullmatch(text) or len(text) % 4 == 1:
        raise ValueError("invalid base64 data")
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def read_query(
    method: str, query_string: str, content_type: str, body: bytes
) -> dns.message.Message:
    """Extract the DNS query of a DoH request, raising HttpStatusError when it is unusable."""
    if method == "GET":
        params = urllib.parse.parse_qs(query_string, keep_blank_values=True)
        values = params.get("dns", [""])
        try:
            wire = _decode_raw_url(values[0])
        except ValueError:
            raise HttpStatusError(HTTPStatus.BAD_REQUEST) from None
        if not wire:
            raise HttpStatusError(HTTPStatus.BAD_REQUEST)
    elif method == "POST":
        if content_type != DNS_MESSAGE_TYPE:
            raise HttpStatusError(HTTPStatus.UNSUPPORTED_MEDIA_TYPE)
        wire = body
    else:
        raise HttpStatusError(HTTPStatus.METHOD_NOT_ALLOWED)
    try:
        return dns.message.from_wire(wire)
    except (dns.exception.DNSException, ValueError):
        raise HttpStatusError(HTTPStatus.BAD_REQUEST) from None


def real_ip_from_headers(
    headers: Mapping[str, str],
) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    """Client address from proxy headers, in order CF-Connecting-IP, True-Client-IP,
    X-Real-IP, then the first X-Forwarded-For entry. Raises ValueError if none holds one."""
    for name in ("Cf-Connecting-Ip", "True-Client-Ip", "X-Real-Ip"):
        try:
            return ipaddress.ip_address(_header(headers, name).strip())
        except ValueError:
            continue
    forwarded = _header(headers, "X-Forwarded-For")
    comma = forwarded.find(",")
    if comma > 0:
        forwarded = forwarded[:comma]
    return ipaddress.ip_address(forwarded.strip())


def _parse_addr_port(remote: str) -> str:
    host, port = _split_host_port(remote)
    if not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid port in address: {remote}")
    return str(ipaddress.ip_address(host))


def remote_addr(remote: str, headers: Mapping[str, str]) -> tuple[str, str | None]:
    """Return the real client IP and the IP of the last proxy, if there was one."""
    host = _parse_addr_port(remote)
    try:
        real = real_ip_from_headers(headers)
    except ValueError:
        return host, None
    return str(real), host


@dataclass
class RequestInfo:
    """Where a request came from: the client IP and the inbound name."""

    ip: str = ""
    inbound: str = ""

    @classmethod
    def from_addr(cls, remote: str, inbound: str) -> RequestInfo:
        try:
            ip = _parse_addr_port(remote)
        except ValueError:
            ip = ""
        return cls(ip=ip, inbound=inbound)

    @classmethod
    def from_http(cls, headers: Mapping[str, str], remote: str) -> RequestInfo:
        ip = _header(headers, "X-Real-IP")
        if not ip:
            forwarded = _header(headers, "X-Forwarded-For")
            if forwarded:
                ip = forwarded.split(",")[0].strip()
            else:
                try:
                    ip, _ = _split_host_port(remote)
                except ValueError:
                    ip = ""
        return cls(ip=ip, inbound="DoH")


class HttpOutbound:
    """Upstream reached by POSTing DNS messages to a DoH URL."""

    timeout = DEFAULT_TIMEOUT

    def __init__(self, tag: str, kind: str, url: str) -> None:
        parts = urllib.parse.urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"invalid http outbound url: {url}")
        self.tag = tag
        self.kind = kind
        self.url = url
        self.host = parts.netloc

    def exchange(self, request: dns.message.Message) -> tuple[dns.message.Message, float]:
        """POST ``request`` with id 0 and return the reply, carrying the original id."""
        original = request.id
        request.id = 0
        try:
            wire = request.to_wire()
        finally:
            request.id = original
        http_request = urllib.request.Request(
            self.url,
            data=wire,
            method="POST",
            headers={
                "User-Agent": "",
                "Content-Type": DNS_MESSAGE_TYPE,
                "Accept": DNS_MESSAGE_TYPE,
            },
        )
        context = ssl.create_default_context() if self.url.startswith("https") else None
        try:
            with urllib.request.urlopen(
                http_request, timeout=self.timeout, context=context
            ) as reply:
                status = reply.status
                body = reply.read()
        except urllib.error.HTTPError as exc:
            raise HttpStatusError(exc.code) from None
        if status != HTTPStatus.OK:
            raise HttpStatusError(status)
        response = dns.message.from_wire(body)
        if response.id != 0:
            raise ValueError(f"unexpected id: {response.id}")
        response.id = original
        return response, 0.0


class HttpInbound:
    """Server answering DoH queries on /dns-query over HTTP or HTTPS."""

    def __init__(self, router: _Exchanger, options: HttpOptions) -> None:
        self.router = router
        self.options = options
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> tuple[str, int]:
        """Listen and serve in the background; return the bound host and port."""
        kind = TransportType(self.options.kind)
        host, port = _split_host_port(self.options.addr)
        server = ThreadingHTTPServer((host, int(port)), self._handler_class())
        server.daemon_threads = True
        if kind is TransportType.HTTPS:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.minimum_version = ssl.TLSVersion.TLSv1_2
            try:
                context.load_cert_chain(self.options.cert, self.options.key)
            except BaseException:
                server.server_close()
                raise
            context.set_alpn_protocols(["http/1.1"])
            server.socket = context.wrap_socket(server.socket, server_side=True)
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("[inbound] %s: %s started", kind.value, self.options.addr)
        bound = server.server_address
        return bound[0], bound[1]

    def close(self) -> None:
        """Stop the server and wait for it to finish."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _answer(self, request: dns.message.Message, ip: str) -> dns.message.Message:
        try:
            response = self.router.exchange(request, str(self.options.kind), ip)
        except Exception as exc:
            logger.debug("exchange failed: %s", exc)
            response = None
        return response if response is not None else new_msg_servfail(request)

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        inbound = self

        class Handler(BaseHTTPRequestHandler):
            def version_string(self) -> str:
                return inbound.options.domain or super().version_string()

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("%s " + format, self.address_string(), *args)

            def _handle(self) -> None:
                parts = urllib.parse.urlsplit(self.path)
                if parts.path != QUERY_PATH:
                    self.send_error(HTTPStatus.NOT_FOUND)
                    return
                peer = self.client_address[0]
                remote = f"[{peer}]:{self.client_address[1]}" if ":" in peer else (
                    f"{peer}:{self.client_address[1]}"
                )
                try:
                    client, _ = remote_addr(remote, self.headers)
                except ValueError as exc:
                    logger.error("get remote addr failed: %s", exc)
                    return
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length > 0 else b""
                try:
                    request = read_query(
                        self.command,
                        parts.query,
                        self.headers.get("Content-Type", ""),
                        body,
                    )
                except HttpStatusError as exc:
                    self.send_error(exc.status)
                    return
                response = inbound._answer(request, client)
                try:
                    wire = response.to_wire()
                except (dns.exception.DNSException, ValueError) as exc:
                    logger.error("packing message: %s", exc)
                    self.send_error(HTTPStatus.INTERNAL_SERVER_ERROR)
                    return
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Type", DNS_MESSAGE_TYPE)
                self.send_header("Content-Length", str(len(wire)))
                self.end_headers()
                self.wfile.write(wire)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _handle

        return Handler