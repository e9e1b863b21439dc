"""Request validation, rewriting, caching and choice of upstream."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from .cache import DnsCache
from .dnsmsg import new_msg_notimplemented, new_msg_nxdomain, new_msg_servfail, set_reply
from .rewrite import Rewriter

logger = logging.getLogger(__name__)


class Outbound(Protocol):
    """An upstream that answers DNS requests."""

    tag: str

    def exchange(self, request: dns.message.Message) -> tuple[dns.message.Message, float]:
        """Send ``request`` upstream and return the reply and the round-trip time."""
        ...


class OutboundLookup(Protocol):
    """Finds outbounds by tag."""

    def get(self, tag: str) -> Outbound | None:
        """Return the outbound with ``tag``, or None."""
        ...


def _normalize(domain: str) -> str:
    return domain.removesuffix(".").lower()


@dataclass
class RouteRule:
    """Sends names under any of ``domains`` to the outbound named ``action``."""

    action: str
    domains: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.domains = tuple(_normalize(domain) for domain in self.domains)

    def __contains__(self, domain: object) -> bool:
        if not isinstance(domain, str):
            return False
        name = _normalize(domain)
        return any(name == suffix or name.endswith("." + suffix) for suffix in self.domains)


@dataclass
class RouteOptions:
    """Routing settings: AAAA blocking, rules and the default outbound tag."""

    block_aaaa: bool = False
    rules: list[RouteRule] = field(default_factory=list)
    default: str = ""


class RouteError(Exception):
    """Raised when the routing configuration refers to unknown outbounds."""


class Router:
    """Answers requests from rewrites, the cache or the chosen upstream."""

    def __init__(
        self,
        options: RouteOptions,
        outbounds: OutboundLookup,
        rewriter: Rewriter,
        cache: DnsCache,
        rules: Iterable[RouteRule] | None = None,
    ) -> None:
        self.options = options
        self.outbounds = outbounds
        self.rewriter = rewriter
        self.cache = cache
        self.rules: list[RouteRule] = []
        cache.set_query(self)
        endpoint = outbounds.get(options.default)
        for rule in options.rules if rules is None else rules:
            outbound = outbounds.get(rule.action)
            if outbound is None:
                raise RouteError(f"outbound {rule.action} not found for rule {rule}")
            self.rules.append(rule)
            if endpoint is None and not options.default:
                endpoint = outbound
        if endpoint is None:
            raise RouteError(f"default outbound {options.default} not found")
        self.endpoint: Outbound = endpoint

    def exchange(
        self, request: dns.message.Message, inbound: str, ip: str
    ) -> dns.message.Message:
        """Answer ``request`` received on ``inbound`` from client ``ip``."""
        early = self._validate(request)
        if early is not None:
            return early
        question = request.question[0]
        name = question.name.to_text()
        qtype = question.rdtype
        type_text = dns.rdatatype.to_text(qtype)

        rewritten = self._rewrite(request)
        if rewritten is not None:
            logger.info(
                "request upstream=rewrite domain=%s qtype=%s inbound=%s client=%s",
                name, type_text, inbound, ip,
            )
            return rewritten

        cached = self.cache.get_and_update(name, qtype)
        if cached is not None:
            response = copy.deepcopy(cached.message)
            set_reply(response, request)
            logger.info(
                "route qtype=%s domain=%s inbound=%s outbound=cache ip=%s",
                type_text, name, inbound, ip,
            )
            return response

        try:
            response, tag = self.resolve(request)
        except Exception as exc:
            logger.debug("route qtype=%s domain=%s error=%s", type_text, name, exc)
            raise
        if response.rcode() != dns.rcode.NOERROR:
            return response

        self.cache.set(name, qtype, response)
        logger.info(
            "route qtype=%s domain=%s inbound=%s outbound=%s ip=%s",
            type_text, name, inbound, tag, ip,
        )
        return response

    def resolve(self, request: dns.message.Message) -> tuple[dns.message.Message, str]:
        """Ask the routed upstream and return its adjusted reply and the outbound tag."""
        question = request.question[0]
        outbound = self.route(question.name.to_text())
        if outbound is None:
            return new_msg_servfail(request), ""
        upstream_request = dns.message.make_query(question.name, question.rdtype)
        upstream_request.flags |= dns.flags.RD
        response, _ = outbound.exchange(upstream_request)
        if self._should_recurse(response, question.rdtype):
            return new_msg_nxdomain(request), ""
        if self.options.block_aaaa:
            response.answer[:] = [
                rrset for rrset in response.answer if rrset.rdtype != dns.rdatatype.AAAA
            ]
        set_reply(response, request)
        response.flags |= dns.flags.AA | dns.flags.RA
        self.rewriter.update_ttl(response)
        return response, outbound.tag

    def route(self, domain: str) -> Outbound | None:
        """Return the outbound for ``domain``: the first matching rule's, else the default."""
        for rule in self.rules:
            if domain in rule:
                return self.outbounds.get(rule.action)
        return self.endpoint

    def _validate(self, request: dns.message.Message) -> dns.message.Message | None:
        if not request.question:
            return new_msg_nxdomain(request)
        if len(request.question) != 1:
            return new_msg_servfail(request)
        qtype = request.question[0].rdtype
        if qtype == dns.rdatatype.ANY:
            # Refused as an anti-DDoS measure.
            return new_msg_notimplemented(request)
        if qtype == dns.rdatatype.AAAA:
            return new_msg_nxdomain(request) if self.options.block_aaaa else None
        if qtype == dns.rdatatype.PTR:
            return new_msg_nxdomain(request)
        return None

    @staticmethod
    def _should_recurse(message: dns.message.Message, qtype: int) -> bool:
        recurse = False
        for rrset in message.answer:
            if rrset.rdtype == qtype:
                return False
            if rrset.rdtype == dns.rdatatype.CNAME:
                recurse = True
        return recurse

    def _rewrite(self, request: dns.message.Message) -> dns.message.Message | None:
        question = request.question[0]
        rewritten = self.rewriter.rewrite(question.name.to_text(), question.rdtype)
        if rewritten is None:
            return None
        set_reply(rewritten, request)
        rewritten.flags |= dns.flags.AA | dns.flags.RA
        return rewritten