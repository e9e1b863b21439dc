"""Construction of standard DNS replies and small message helpers."""

from __future__ import annotations

import enum

import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.SOA
import dns.rrset

# Maximum DNS/UDP payload for IPv6 over a 1500 octet MTU (1500 - 40 - 8).
MAX_UDP_PAYLOAD = 1452

DEFAULT_MIN_TTL = 60

_NEGATIVE_CACHING_NS = "fake-for-negative-caching.adguard.com."
_SOA_SERIAL = 100500
_SOA_REFRESH = 1800
_SOA_RETRY = 60
_SOA_EXPIRE = 604800
_SOA_MINTTL = 86400
_SOA_TTL = 10


class TransportType(str, enum.Enum):
    """Transport protocols understood by inbounds and outbounds."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    STCP = "stcp"
    HTTP = "http"
    HTTPS = "https"

    def __str__(self) -> str:
        return self.value


def set_reply(response: dns.message.Message, request: dns.message.Message) -> dns.message.Message:
    """Turn ``response`` into a reply to ``request`` and return it."""
    response.id = request.id
    opcode = request.opcode()
    flags = response.flags | dns.flags.QR
    if opcode == dns.opcode.QUERY:
        mask = dns.flags.RD | dns.flags.CD
        flags = (flags & ~mask) | (request.flags & mask)
    response.flags = flags
    response.set_opcode(opcode)
    response.set_rcode(dns.rcode.NOERROR)
    if request.question:
        response.question = [request.question[0]]
    return response


def _reply(request: dns.message.Message, rcode: int) -> dns.message.Message:
    response = dns.message.Message(id=request.id)
    set_reply(response, request)
    response.set_rcode(rcode)
    return response


def new_msg_nxdomain(request: dns.message.Message) -> dns.message.Message:
    """Return an NXDOMAIN reply to ``request``."""
    return _reply(request, dns.rcode.NXDOMAIN)


def new_msg_servfail(request: dns.message.Message) -> dns.message.Message:
    """Return a SERVFAIL reply to ``request``."""
    return _reply(request, dns.rcode.SERVFAIL)


def new_msg_notimplemented(request: dns.message.Message) -> dns.message.Message:
    """Return a NOTIMP reply carrying EDNS, so it is not read as lack of EDNS support."""
    response = _reply(request, dns.rcode.NOTIMP)
    response.use_edns(0, 0, MAX_UDP_PAYLOAD)
    return response


def new_msg_nodata(request: dns.message.Message) -> dns.message.Message:
    """Return an empty NOERROR reply with a SOA record for negative caching."""
    if not request.question:
        raise ValueError("request has no question")
    response = _reply(request, dns.rcode.NOERROR)
    zone = request.question[0].name
    zone_text = zone.to_text()
    mbox = "hostmaster."
    if not zone_text.startswith("."):
        mbox += zone_text
    soa = dns.rdtypes.ANY.SOA.SOA(
        dns.rdataclass.IN,
        dns.rdatatype.SOA,
        dns.name.from_text(_NEGATIVE_CACHING_NS),
        dns.name.from_text(mbox),
        _SOA_SERIAL,
        _SOA_REFRESH,
        _SOA_RETRY,
        _SOA_EXPIRE,
        _SOA_MINTTL,
    )
    response.authority.append(dns.rrset.from_rdata(zone, _SOA_TTL, soa))
    return response


def get_min_ttl(message: dns.message.Message) -> int:
    """Smallest non-zero TTL in the answer section, or 60 when there is none."""
    ttls = [rrset.ttl for rrset in message.answer if rrset.ttl and len(rrset)]
    return min(ttls, default=DEFAULT_MIN_TTL)