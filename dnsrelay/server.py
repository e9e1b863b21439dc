"""The DNS server: wires options into outbounds, router, cache and listeners."""

from __future__ import annotations

import logging
import sys
import threading
from typing import Any

from .bootstrap import Bootstrap
from .cache import DnsCache
from .dnsmsg import TransportType
from .doh import HttpInbound
from .manager import TransportManager
from .options import Options
from .rewrite import Rewriter
from .router import Router
from .tcp import TcpInbound
from .udp import UdpInbound

_LOGGER_NAME = "dnsrelay"
_LOG_FORMAT = "time=%(asctime)s level=%(levelname)s msg=%(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_default_handler = logging.StreamHandler(sys.stdout)
_default_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))


def _default_logger(level: int) -> logging.Logger:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)
    _default_handler.setStream(sys.stdout)
    if _default_handler not in logger.handlers:
        logger.addHandler(_default_handler)
    return logger


class DnsServer:
    """Runs the configured inbounds until shut down."""

    def __init__(self, options: Options, logger: logging.Logger | None = None) -> None:
        self.options = options
        self.logger = logger
        self.started = threading.Event()
        self.addresses: dict[str, tuple[str, int]] = {}
        self.bootstrap: Bootstrap | None = None
        self.outbounds: TransportManager | None = None
        self.rewriter: Rewriter | None = None
        self.router: Router | None = None
        self.cache: DnsCache | None = None
        self._inbounds: list[Any] = []
        self._closing = threading.Event()
        self._done = threading.Event()
        self._done.set()
        self._lock = threading.Lock()
        self._running = False

    def serve(self) -> None:
        """Start everything, block until shutdown, then stop everything."""
        with self._lock:
            if self._running:
                raise RuntimeError("server is already running")
            self._running = True
            self._done.clear()
        try:
            self._init()
            self.started.set()
            self._closing.wait()
        finally:
            self._teardown()
            with self._lock:
                self._running = False
                self._done.set()

    def shutdown(self) -> None:
        """Ask the server to stop and wait until serve has finished."""
        self._closing.set()
        with self._lock:
            running = self._running
        if running:
            self._done.wait()

    def _init(self) -> None:
        options = self.options
        if self.logger is None:
            self.logger = _default_logger(options.logger_level())
        log = self.logger

        self.bootstrap = Bootstrap(options.bootstrap_dns)
        log.info("bootstrap dns: %s", ", ".join(options.bootstrap_dns))

        self.cache = DnsCache(options.cache)
        self.outbounds = TransportManager(options.outbounds, self.bootstrap)
        self.rewriter = Rewriter(options.rewrite)
        self.router = Router(options.route, self.outbounds, self.rewriter, self.cache)
        self.cache.start()

        inbounds = options.inbounds
        specs = (
            (TransportType.UDP, inbounds.udp, UdpInbound),
            (TransportType.TCP, inbounds.tcp, TcpInbound),
            (TransportType.TLS, inbounds.tls, TcpInbound),
            (TransportType.STCP, inbounds.stcp, TcpInbound),
            (TransportType.HTTP, inbounds.http, HttpInbound),
            (TransportType.HTTPS, inbounds.https, HttpInbound),
        )
        for kind, inbound_options, factory in specs:
            if inbound_options is None:
                continue
            inbound_options.kind = kind
            inbound = factory(self.router, inbound_options)
            address = inbound.start()
            self._inbounds.append(inbound)
            self.addresses[kind.value] = address

    def _teardown(self) -> None:
        for inbound in self._inbounds:
            try:
                inbound.close()
            except OSError as exc:
                if self.logger is not None:
                    self.logger.error("inbound close failed: %s", exc)
        self._inbounds.clear()
        if self.cache is not None:
            self.cache.close()
        if self.logger is not None:
            self.logger.debug("dns server close")