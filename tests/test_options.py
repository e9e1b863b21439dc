import logging

import pytest

from dnsrelay.dnsmsg import TransportType
from dnsrelay.options import Options, load_config, parse_duration


@pytest.mark.parametrize(
    "text,seconds",
    [("24h", 86400.0), ("5m", 300.0), ("600s", 600.0), ("60s", 60.0), ("0", 0.0)],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


def test_parse_duration_compound_equals_sum():
    assert parse_duration("1h30m") == pytest.approx(parse_duration("1h") + parse_duration("30m"))
    assert parse_duration("1500ms") == pytest.approx(parse_duration("1.5s"))


@pytest.mark.parametrize("text", ["", "10", "5x", "h", "1h 2m"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_defaults():
    options = Options.from_mapping({})
    assert options.log_level == "info"
    assert options.geosite == "geosite.dat"
    assert options.bootstrap_dns == ["223.5.5.5", "223.6.6.6"]
    assert options.cache.ttl == pytest.approx(parse_duration("24h"))
    assert options.rewrite.min_ttl == pytest.approx(parse_duration("600s"))
    assert options.inbounds.udp is None


def test_full_mapping():
    options = Options.from_mapping(
        {
            "log-level": "debug",
            "inbound": {"udp": {"addr": ":5353"}, "https": {"addr": ":443", "domain": "dns.example.com"}},
            "outbound": {"ali": "223.5.5.5:53"},
            "cache": {"threads": 2, "refresh-ttl": "1m"},
            "route": {"default": "ali", "block-aaaa": True, "rules": [{"action": "ali", "domains": ["cn"]}]},
            "rewrite": {"rule": [{"domain": "router.lan", "value": "192.168.1.1"}]},
        }
    )
    assert options.logger_level() == logging.DEBUG
    assert options.inbounds.udp.addr == ":5353"
    assert options.inbounds.https.kind == TransportType.HTTPS
    assert options.inbounds.https.domain == "dns.example.com"
    assert options.outbounds == {"ali": "223.5.5.5:53"}
    assert options.cache.threads == 2
    assert options.cache.refresh_ttl == pytest.approx(parse_duration("1m"))
    assert options.route.block_aaaa is True
    assert "www.cn" in options.route.rules[0]
    rule = options.rewrite.rules[0]
    assert (rule.type, rule.value) == ("A", "192.168.1.1")
    assert rule.ttl == pytest.approx(parse_duration("60s"))


@pytest.mark.parametrize(
    "level,expected",
    [("warn", logging.WARNING), ("error", logging.ERROR), ("loud", logging.INFO)],
)
def test_logger_level(level, expected):
    assert Options(log_level=level).logger_level() == expected


def test_load_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("log-level: warn\noutbound:\n  up: tcp://192.0.2.1:53\n", encoding="utf-8")
    options = load_config(path)
    assert options.log_level == "warn"
    assert options.outbounds == {"up": "tcp://192.0.2.1:53"}


def test_invalid_sections(tmp_path):
    with pytest.raises(ValueError):
        Options.from_mapping({"cache": ["not", "a", "mapping"]})
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")