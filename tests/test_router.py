import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from dnsrelay.cache import DnsCache
from dnsrelay.rewrite import RewriteOptions, Rewriter, RuleOptions
from dnsrelay.router import RouteError, RouteOptions, RouteRule, Router


class FakeOutbound:
    def __init__(self, tag, records=(), error=None):
        self.tag = tag
        self.records = list(records)
        self.error = error
        self.requests = []

    def exchange(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        response = dns.message.make_response(request)
        name = request.question[0].name
        for rdtype, ttl, value in self.records:
            response.answer.append(dns.rrset.from_text(name, ttl, "IN", rdtype, value))
        return response, 0.0


class FakeOutbounds:
    def __init__(self, *outbounds):
        self._by_tag = {outbound.tag: outbound for outbound in outbounds}

    def get(self, tag):
        return self._by_tag.get(tag)


def make_router(*outbounds, options=None, rewrite=None, rules=None):
    return Router(
        options if options is not None else RouteOptions(default="main"),
        FakeOutbounds(*outbounds),
        Rewriter(rewrite if rewrite is not None else RewriteOptions()),
        DnsCache(),
        rules,
    )


def test_missing_default_outbound_raises():
    with pytest.raises(RouteError):
        make_router(FakeOutbound("main"), options=RouteOptions(default="missing"))


def test_rule_with_unknown_outbound_raises():
    with pytest.raises(RouteError):
        make_router(FakeOutbound("main"), rules=[RouteRule("nowhere", ("example.com",))])


def test_first_rule_outbound_becomes_default_when_unset():
    main, alt = FakeOutbound("main"), FakeOutbound("alt")
    router = make_router(
        main, alt, options=RouteOptions(default=""), rules=[RouteRule("alt", ("example.com",))]
    )
    assert router.route("other.org.") is alt


def test_route_prefers_matching_rule():
    main, alt = FakeOutbound("main"), FakeOutbound("alt")
    router = make_router(main, alt, rules=[RouteRule("alt", ("example.com",))])
    assert router.route("WWW.Example.COM.") is alt
    assert router.route("example.org.") is main


def test_rule_matches_on_label_boundary():
    rule = RouteRule("alt", ("example.com.",))
    assert "a.example.com" in rule
    assert "example.com." in rule
    assert "badexample.com" not in rule


def test_any_query_is_not_implemented():
    outbound = FakeOutbound("main")
    router = make_router(outbound)
    response = router.exchange(dns.message.make_query("example.com.", "ANY"), "udp", "127.0.0.1")
    assert response.rcode() == dns.rcode.NOTIMP
    assert response.payload == 1452
    assert outbound.requests == []


def test_ptr_query_gets_nxdomain():
    outbound = FakeOutbound("main")
    router = make_router(outbound)
    request = dns.message.make_query("1.0.0.127.in-addr.arpa.", "PTR")
    response = router.exchange(request, "udp", "127.0.0.1")
    assert response.rcode() == dns.rcode.NXDOMAIN
    assert response.id == request.id
    assert outbound.requests == []


def test_aaaa_blocked_gets_nxdomain():
    outbound = FakeOutbound("main")
    router = make_router(outbound, options=RouteOptions(default="main", block_aaaa=True))
    response = router.exchange(dns.message.make_query("example.com.", "AAAA"), "tcp", "::1")
    assert response.rcode() == dns.rcode.NXDOMAIN
    assert outbound.requests == []


def test_request_without_question_gets_nxdomain():
    router = make_router(FakeOutbound("main"))
    request = dns.message.Message(id=7)
    response = router.exchange(request, "udp", "127.0.0.1")
    assert response.rcode() == dns.rcode.NXDOMAIN
    assert response.id == request.id


def test_rewrite_answers_locally():
    outbound = FakeOutbound("main")
    rewrite = RewriteOptions(
        rules=[RuleOptions(domain="home.example.com", type="A", value="10.0.0.1")]
    )
    router = make_router(outbound, rewrite=rewrite)
    request = dns.message.make_query("home.example.com.", "A")
    response = router.exchange(request, "udp", "127.0.0.1")
    assert response.answer[0][0].address == "10.0.0.1"
    assert response.flags & dns.flags.AA
    assert response.flags & dns.flags.QR
    assert response.id == request.id
    assert outbound.requests == []


def test_forwarded_answer_is_adjusted_and_cached():
    outbound = FakeOutbound("main", records=[("A", 30, "192.0.2.1")])
    router = make_router(outbound)
    first = dns.message.make_query("www.example.com.", "A")
    response = router.exchange(first, "udp", "127.0.0.1")
    assert response.answer[0][0].address == "192.0.2.1"
    assert response.answer[0].ttl == 600
    assert response.flags & dns.flags.AA
    assert response.flags & dns.flags.RA
    assert response.id == first.id

    second = dns.message.make_query("www.example.com.", "A")
    cached = router.exchange(second, "udp", "127.0.0.1")
    assert cached.id == second.id
    assert cached.answer[0][0].address == "192.0.2.1"
    assert len(outbound.requests) == 1


def test_upstream_request_asks_for_recursion():
    outbound = FakeOutbound("main", records=[("A", 30, "192.0.2.1")])
    router = make_router(outbound)
    router.exchange(dns.message.make_query("www.example.com.", "A"), "udp", "127.0.0.1")
    assert outbound.requests[0].flags & dns.flags.RD
    assert outbound.requests[0].question[0].name.to_text() == "www.example.com."


def test_cname_only_answer_becomes_nxdomain_and_is_not_cached():
    outbound = FakeOutbound("main", records=[("CNAME", 300, "target.example.net.")])
    router = make_router(outbound)
    for _ in range(2):
        response = router.exchange(
            dns.message.make_query("alias.example.com.", "A"), "udp", "127.0.0.1"
        )
        assert response.rcode() == dns.rcode.NXDOMAIN
    assert len(outbound.requests) == 2


def test_outbound_error_propagates():
    router = make_router(FakeOutbound("main", error=OSError("down")))
    with pytest.raises(OSError):
        router.exchange(dns.message.make_query("example.com.", "A"), "udp", "127.0.0.1")


def test_resolve_filters_aaaa_when_blocked():
    outbound = FakeOutbound("main", records=[("A", 30, "192.0.2.1"), ("AAAA", 30, "2001:db8::1")])
    router = make_router(outbound, options=RouteOptions(default="main", block_aaaa=True))
    response, tag = router.resolve(dns.message.make_query("x.example.com.", "A"))
    assert {rrset.rdtype for rrset in response.answer} == {dns.rdatatype.A}
    assert tag == "main"


def test_resolve_caps_ttl_at_maximum():
    outbound = FakeOutbound("main", records=[("A", 200000, "192.0.2.1")])
    router = make_router(outbound)
    response, _ = router.resolve(dns.message.make_query("x.example.com.", "A"))
    assert response.answer[0].ttl == 86400