# dnsrelay

A forwarding DNS server. It accepts queries over UDP, TCP, DNS-over-TLS
and DNS-over-HTTP(S), and forwards them to upstream resolvers chosen per
domain by routing rules. Answers are cached and refreshed in the
background, and selected names can be answered locally by rewrite rules.

## Features

- Inbound listeners: UDP, TCP, TLS, HTTP and HTTPS. The HTTP listeners
  answer RFC 8484 queries on `/dns-query` (GET with a `dns` parameter, or
  POST with `Content-Type: application/dns-message`).
- Outbound upstreams: `udp://`, `tcp://`, `tls://`, `http://` and
  `https://`. An address without a scheme is taken as UDP.
- Upstream host names are resolved through bootstrap DNS servers and
  remembered for ten minutes.
- Routing rules send names under listed domains to a chosen upstream; a
  default upstream takes everything else.
- Answer cache with a hard TTL and a shorter refresh TTL: a stale entry is
  still served while a fresh answer is fetched by background workers.
- Rewrite rules that answer `A`, `AAAA`, `TXT` and `CNAME` queries locally.
- TTLs of upstream answers are clamped between a minimum and a maximum.
- `ANY` queries get NOTIMP, `PTR` queries get NXDOMAIN, and `AAAA` queries
  can be answered with NXDOMAIN altogether (`block-aaaa`).
- For DoH requests the client address is taken from `CF-Connecting-IP`,
  `True-Client-IP`, `X-Real-IP` or the first `X-Forwarded-For` entry, in
  that order, falling back to the peer address.

## Installation

```
pip install .
```

## Running

```
dnsrelay --config config.yaml
```

`--config` (also accepted as `-config`) defaults to `config.yaml` in the
current directory. The server runs until it receives SIGINT (Ctrl+C),
SIGTERM or SIGQUIT, or until serving fails, then closes its listeners and
the cache. The exit status is 1 if the configuration could not be read or
serving failed, otherwise 0.

## Configuration

The configuration file is YAML. Every key is optional; the defaults are
shown where there is one.

```yaml
log-level: info            # debug, info, warn or error; anything else means info

bootstrap-dns:             # IP addresses, port 53 if none is given
  - 223.5.5.5
  - 223.6.6.6

inbound:
  udp:
    addr: ":53"            # ":53" when empty
  tcp:
    addr: ":53"
  tls:
    addr: ":853"
    cert: server.crt
    key: server.key
  http:
    addr: ":8080"
  https:
    addr: ":443"
    domain: dns.example.com   # sent back in the Server header
    cert: server.crt
    key: server.key

outbound:
  local: 223.5.5.5:53
  secure: https://dns.example.com/dns-query
  stream: tls://1.1.1.1:853

route:
  default: local
  block-aaaa: false
  rules:
    - action: secure       # tag of an outbound
      domains:             # a name matches a domain or any name under it
        - example.org
        - example.net

cache:
  max-counters: 10000      # must be positive
  max-cost: 10000          # maximum number of cached answers
  buffer-items: 64         # must be positive
  ttl: 24h                 # how long an answer is kept at all; 0 keeps it until evicted
  threads: 5               # background refresh workers
  refresh-ttl: 5m          # after this an answer is refreshed on next use

rewrite:
  min-ttl: 600s
  max-ttl: 24h
  rule:
    - domain: router.example.com
      type: A              # A, AAAA, TXT or CNAME, upper case
      value: 192.168.1.1
      ttl: 60s
```

Only the inbound sections that are present are started; the TCP, TLS and
HTTP(S) listeners need an `addr`. Durations take values such as `300ms`,
`60s`, `5m`, `1h30m` or `24h`; a bare number is read as nanoseconds.

Rules are tried in order and the first match wins. Every rule's `action`
must name an outbound, and `route.default` must name one too; when
`default` is empty, the first rule's outbound becomes the default. The
server refuses to start otherwise (`dnsrelay.router.RouteError`). An
outbound whose address cannot be parsed or whose host cannot be resolved
is logged and left out.

## Using it from Python

```python
from dnsrelay.options import load_config
from dnsrelay.server import DnsServer

options = load_config("config.yaml")
server = DnsServer(options, None)
server.serve()          # blocks until shutdown() is called from another thread
```

`DnsServer.shutdown()` stops a running server and waits for `serve()` to
return. Once the listeners are up, `server.started` is set and
`server.addresses` maps each inbound kind to its bound host and port.

The pieces can be used on their own as well: `dnsrelay.options.Options`
and `parse_duration`, `dnsrelay.router.Router`, `dnsrelay.cache.DnsCache`,
`dnsrelay.rewrite.Rewriter`, `dnsrelay.manager.TransportManager`,
`dnsrelay.bootstrap.Bootstrap`, the outbounds `UdpOutbound`, `TcpOutbound`
and `HttpOutbound`, and the reply builders in `dnsrelay.dnsmsg`.

## What it does not do

- There is no password-protected stream transport: an `stcp` inbound is
  rejected when the server starts, and `stcp://` outbounds are reported as
  an unsupported protocol and skipped.
- The `geosite` key is accepted but not used; routing rules are plain
  domain lists in the configuration, not geosite categories.
- The HTTPS listener speaks HTTP/1.1 only, not HTTP/2.

## Tests

```
pip install ".[test]"
pytest
```