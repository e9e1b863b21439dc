"""Static answer rewriting and TTL clamping."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import dns.exception
import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.CNAME
import dns.rdtypes.ANY.TXT
import dns.rdtypes.IN.A
import dns.rdtypes.IN.AAAA
import dns.rrset

logger = logging.getLogger(__name__)


@dataclass
class RuleOptions:
    """One rewrite rule: answer ``domain`` queries of ``type`` with ``value``."""

    domain: str = ""
    type: str = "A"
    value: str = ""
    ttl: float = 60.0


@dataclass
class RewriteOptions:
    """Rewrite rules and the TTL bounds applied to upstream answers."""

    min_ttl: float = 600.0
    max_ttl: float = 86400.0
    rules: list[RuleOptions] = field(default_factory=list)


def _type_from_text(text: str) -> int | None:
    try:
        rdtype = dns.rdatatype.from_text(text)
    except (dns.exception.DNSException, ValueError):
        return None
    if dns.rdatatype.to_text(rdtype) != text:
        return None
    return rdtype


class Rewriter:
    """Answers configured names locally and clamps TTLs of other answers."""

    def __init__(self, options: RewriteOptions | None = None) -> None:
        self.options = options if options is not None else RewriteOptions()

    def rewrite(self, domain: str, qtype: int) -> dns.message.Message | None:
        """Return a rewritten answer for the query, or None if no rule applies."""
        query = (domain[:-1] if domain.endswith(".") else domain).casefold()
        for rule in self.options.rules:
            if query != rule.domain.casefold():
                continue
            target = _type_from_text(rule.type)
            if target is None or target != qtype:
                continue
            return self._build(rule, domain, qtype)
        return None

    def _build(self, rule: RuleOptions, domain: str, qtype: int) -> dns.message.Message | None:
        ttl = int(rule.ttl)
        inet = dns.rdataclass.IN
        try:
            owner = dns.name.from_text(domain)
            if qtype == dns.rdatatype.A:
                rdata = dns.rdtypes.IN.A.A(inet, dns.rdatatype.A, rule.value)
            elif qtype == dns.rdatatype.AAAA:
                rdata = dns.rdtypes.IN.AAAA.AAAA(inet, dns.rdatatype.AAAA, rule.value)
            elif qtype == dns.rdatatype.TXT:
                rdata = dns.rdtypes.ANY.TXT.TXT(inet, dns.rdatatype.TXT, [rule.value])
            elif qtype == dns.rdatatype.CNAME:
                rdata = dns.rdtypes.ANY.CNAME.CNAME(
                    inet, dns.rdatatype.CNAME, dns.name.from_text(rule.value)
                )
            else:
                logger.warning("unsupported rewrite type %s", rule.type)
                return None
        except (dns.exception.DNSException, ValueError) as exc:
            logger.warning("invalid rewrite value %r for %s: %s", rule.value, domain, exc)
            return None
        response = dns.message.Message(id=0)
        response.answer.append(dns.rrset.from_rdata(owner, ttl, rdata))
        return response

    def update_ttl(self, message: dns.message.Message) -> None:
        """Clamp answer TTLs to [min, max] and raise other sections to min."""
        highest = int(self.options.max_ttl)
        lowest = int(self.options.min_ttl)
        for rrset in message.answer:
            ttl = rrset.ttl
            if lowest > 0 and ttl < lowest:
                ttl = lowest
            if highest > 0 and ttl > highest:
                ttl = highest
            rrset.ttl = ttl
        for rrset in (*message.authority, *message.additional):
            if lowest > 0 and rrset.ttl < lowest:
                rrset.ttl = lowest