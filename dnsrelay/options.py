"""Server configuration: defaults, YAML loading and duration parsing."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .cache import CacheOptions
from .dnsmsg import TransportType
from .doh import HttpOptions
from .rewrite import RewriteOptions, RuleOptions
from .router import RouteOptions, RouteRule
from .tcp import TcpOptions
from .udp import UdpOptions

_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def parse_duration(text: Any) -> float:
    """Parse a duration such as ``1h30m`` or ``300ms`` into seconds; bare numbers are nanoseconds."""
    if isinstance(text, bool):
        raise ValueError(f"invalid duration {text!r}")
    if isinstance(text, (int, float)):
        return text * 1e-9
    original = text = str(text).strip()
    sign = -1.0 if text.startswith("-") else 1.0
    text = text.lstrip("+-")[: len(text)] if text[:1] in "+-" else text
    if text[:1] in "+-":
        text = text[1:]
    if text == "0":
        return 0.0
    parts = list(_PART.finditer(text))
    if not text or "".join(p.group(0) for p in parts) != text:
        raise ValueError(f"invalid duration {original!r}")
    return sign * sum(float(p.group(1)) * _UNITS[p.group(2)] for p in parts)


def _section(data: Any, name: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{name}: expected a mapping")
    return data


@dataclass
class InboundOptions:
    """Listeners to start; None leaves a listener off."""

    udp: UdpOptions | None = None
    tcp: TcpOptions | None = None
    tls: TcpOptions | None = None
    stcp: TcpOptions | None = None
    http: HttpOptions | None = None
    https: HttpOptions | None = None


def _inbounds(data: Any) -> InboundOptions:
    data = _section(data, "inbound")
    inbounds = InboundOptions()
    for kind in TransportType:
        item = data.get(kind.value)
        if item is None:
            continue
        item = _section(item, kind.value)
        text = {k: str(item.get(k, "")) for k in ("addr", "cert", "key", "domain")}
        if kind is TransportType.UDP:
            value: Any = UdpOptions(kind=kind, addr=text["addr"])
        elif kind in (TransportType.HTTP, TransportType.HTTPS):
            value = HttpOptions(kind=kind, domain=text["domain"], addr=text["addr"],
                                cert=text["cert"], key=text["key"])
        else:
            value = TcpOptions(kind=kind, addr=text["addr"], password=item.get("password"),
                               cert=text["cert"], key=text["key"])
        setattr(inbounds, kind.value, value)
    return inbounds


def _cache(data: Any) -> CacheOptions:
    data = _section(data, "cache")
    options = CacheOptions()
    for key in ("max-counters", "max-cost", "buffer-items", "threads"):
        if key in data:
            setattr(options, key.replace("-", "_"), int(data[key]))
    for key in ("ttl", "refresh-ttl"):
        if key in data:
            setattr(options, key.replace("-", "_"), parse_duration(data[key]))
    return options


def _route(data: Any) -> RouteOptions:
    data = _section(data, "route")
    rules = []
    for item in data.get("rules") or []:
        item = _section(item, "route rule")
        if "action" not in item:
            raise ValueError("route rule: missing action")
        rules.append(RouteRule(action=str(item["action"]), domains=tuple(item.get("domains") or ())))
    return RouteOptions(
        block_aaaa=bool(data.get("block-aaaa", False)),
        rules=rules,
        default=str(data.get("default") or ""),
    )


def _rewrite(data: Any) -> RewriteOptions:
    data = _section(data, "rewrite")
    options = RewriteOptions()
    for key in ("min-ttl", "max-ttl"):
        if key in data:
            setattr(options, key.replace("-", "_"), parse_duration(data[key]))
    for item in data.get("rule") or []:
        item = _section(item, "rewrite rule")
        rule = RuleOptions(
            domain=str(item.get("domain", "")),
            type=str(item.get("type", "A")),
            value=str(item.get("value", "")),
        )
        if "ttl" in item:
            rule.ttl = parse_duration(item["ttl"])
        options.rules.append(rule)
    return options


@dataclass
class Options:
    """Whole server configuration with its defaults."""

    log_level: str = "info"
    inbounds: InboundOptions = field(default_factory=InboundOptions)
    geosite: str = "geosite.dat"
    bootstrap_dns: list[str] = field(default_factory=lambda: ["223.5.5.5", "223.6.6.6"])
    cache: CacheOptions = field(default_factory=CacheOptions)
    outbounds: dict[str, str] = field(default_factory=dict)
    route: RouteOptions = field(default_factory=RouteOptions)
    rewrite: RewriteOptions = field(default_factory=RewriteOptions)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> Options:
        """Build options from parsed YAML; absent keys keep their defaults."""
        data = _section(data, "config")
        options = cls(
            inbounds=_inbounds(data.get("inbound")),
            cache=_cache(data.get("cache")),
            outbounds={str(t): str(a) for t, a in _section(data.get("outbound"), "outbound").items()},
            route=_route(data.get("route")),
            rewrite=_rewrite(data.get("rewrite")),
        )
        if "log-level" in data:
            options.log_level = str(data["log-level"])
        if "geosite" in data:
            options.geosite = str(data["geosite"])
        if data.get("bootstrap-dns") is not None:
            options.bootstrap_dns = [str(item) for item in data["bootstrap-dns"]]
        return options

    def logger_level(self) -> int:
        """Logging level for ``log_level``; unknown names mean info."""
        return _LEVELS.get(self.log_level, logging.INFO)


def load_config(path: str | Path) -> Options:
    """Read a YAML configuration file."""
    return Options.from_mapping(yaml.safe_load(Path(path).read_text(encoding="utf-8")))