import socket
import threading

import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from dnsrelay.bootstrap import Bootstrap, BootstrapError, parse_servers


class FakeDnsServer:
    def __init__(self, address="10.0.0.1", rcode=dns.rcode.NOERROR):
        self.address = address
        self.rcode = rcode
        self.queries = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.05)
        self.port = self.sock.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    @property
    def server(self):
        return f"127.0.0.1:{self.port}"

    def _run(self):
        while not self._stop.is_set():
            try:
                data, peer = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                return
            query = dns.message.from_wire(data)
            self.queries.append(query)
            response = dns.message.make_response(query)
            response.set_rcode(self.rcode)
            if self.rcode == dns.rcode.NOERROR:
                response.answer.append(
                    dns.rrset.from_text(query.question[0].name, 60, "IN", "A", self.address)
                )
            self.sock.sendto(response.to_wire(), peer)

    def close(self):
        self._stop.set()
        self._thread.join()
        self.sock.close()


@pytest.fixture
def good_server():
    server = FakeDnsServer()
    yield server
    server.close()


@pytest.fixture
def failing_server():
    server = FakeDnsServer(rcode=dns.rcode.NXDOMAIN)
    yield server
    server.close()


def test_parse_servers_adds_default_port():
    assert parse_servers(["223.5.5.5", "223.6.6.6:5353"]) == ["223.5.5.5:53", "223.6.6.6:5353"]


def test_parse_servers_ipv6():
    assert parse_servers(["::1", "[2001:db8::1]:5300"]) == ["[::1]:53", "[2001:db8::1]:5300"]


@pytest.mark.parametrize(
    "servers, message",
    [
        ([], "empty dns server"),
        ([""], r"dns\[0\] is empty"),
        (["1.1.1.1", "udp://1.1.1.1"], r"dns\[1\] is invalid dns"),
        (["example.com"], r"dns\[0\] is invalid dns"),
        (["example.com:53"], r"dns\[0\] is invalid dns"),
    ],
)
def test_parse_servers_errors(servers, message):
    with pytest.raises(BootstrapError, match=message):
        parse_servers(servers)


def test_default_servers():
    assert Bootstrap().servers == ["223.5.5.5:53", "223.6.6.6:53"]


def test_resolve_returns_a_record(good_server):
    bootstrap = Bootstrap([good_server.server])
    assert bootstrap.resolve("example.com") == "10.0.0.1"
    question = good_server.queries[0].question[0]
    assert question.name.to_text() == "example.com."
    assert question.rdtype == dns.rdatatype.A


def test_resolve_falls_through_failing_server(failing_server, good_server):
    bootstrap = Bootstrap([failing_server.server, good_server.server])
    assert bootstrap.resolve("example.com") == "10.0.0.1"
    assert len(failing_server.queries) == 1


def test_resolve_without_answer_raises(failing_server):
    bootstrap = Bootstrap([failing_server.server])
    with pytest.raises(BootstrapError, match="no A record found for example.com"):
        bootstrap.resolve("example.com")


def test_lookup_uses_cache(good_server):
    bootstrap = Bootstrap([good_server.server])
    assert bootstrap.lookup("example.com") == "10.0.0.1"
    assert bootstrap.lookup("example.com") == "10.0.0.1"
    assert len(good_server.queries) == 1


def test_lookup_expired_entry_queries_again(good_server):
    bootstrap = Bootstrap([good_server.server], ttl=0)
    bootstrap.lookup("example.com")
    bootstrap.lookup("example.com")
    assert len(good_server.queries) == 2


def test_set_dns_failure_keeps_servers(good_server):
    bootstrap = Bootstrap([good_server.server])
    with pytest.raises(BootstrapError):
        bootstrap.set_dns(["not-an-ip"])
    assert bootstrap.servers == [good_server.server]
    assert bootstrap.resolve("example.com") == "10.0.0.1"