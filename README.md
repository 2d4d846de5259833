# rec53

`rec53` provides the parts of an iterative, caching DNS resolver: a
resolution state machine, a type-aware message cache, upstream nameserver
quality tracking, a UDP/TCP front end and Prometheus-style metrics. Messages
are `dnspython` objects throughout.

## Modules

- `rec53.states` – the `State` enum (`INIT`, `CACHE_LOOKUP`, `CLASSIFY_RESP`,
  `EXTRACT_GLUE`, `LOOKUP_NS_CACHE`, `QUERY_UPSTREAM`, `RETURN_RESP`) and the
  result enums each step reports (`InitResult`, `CacheLookupResult`,
  `ClassifyResult`, `GlueResult`, `NSCacheResult`, `UpstreamResult`,
  `ReturnResult`).
- `rec53.handlers` – the individual steps, each mutating the response in place
  and raising `ValueError` when the request or response is missing:
  - `init_request(request, response)` – a request with other than exactly one
    question, QR set, or a non-QUERY opcode gets a FORMERR reply; otherwise the
    response becomes an empty NOERROR reply.
  - `lookup_cache(request, response, cache)` – copies cached answers for the
    question's name and type.
  - `classify_response(request, response, cache)` – returns `GET_NEGATIVE` for
    NXDOMAIN/NODATA with an SOA in the authority section (and caches it with
    the SOA's negative TTL), `GET_ANS` for a matching record type, `GET_CNAME`
    for a CNAME to follow, and `GET_NS` otherwise.
  - `extract_glue(request, response)` – keeps an NS delegation whose zone
    covers the question; any other authority data (an unrelated zone, an SOA)
    is cleared together with the additional section.
  - `lookup_ns_cache(request, response, cache, root_glue)` – adds the closest
    cached NS delegation for the question's name or its ancestors, or else the
    given root glue.
- `rec53.resolver` – `Resolver` runs the steps until a response is ready.
  CNAME chains are followed and placed, in order, before the final answers;
  a cycle or more than `MAX_ITERATIONS` (50) steps raises `ResolutionError`.
  Delegation data is kept across a CNAME only when its zone covers the target
  (`is_ns_relevant_for_cname`). `follow_cname` and `build_final_response` are
  available on their own.
- `rec53.cache` – `MessageCache`, a thread-safe TTL cache that stores and
  returns deep copies. `cache_key(name, qtype)` gives keys like
  `"example.com.:1"`. A TTL of 0 means the default of five minutes.
- `rec53.ip_quality` – `IPQuality` keeps the last 64 round-trip times of one
  address with P50/P95/P99, a confidence level (10 per sample, up to 100) and
  an `IPState` (`ACTIVE`, `DEGRADED`, `SUSPECT`, `RECOVERED`). One to three
  consecutive failures degrade the address with a 20% P50 penalty; four or
  more mark it suspect at 10000 ms. `score()` is P50 × confidence penalty ×
  state weight; lower is better.
- `rec53.ip_pool` – `IPPool` holds `IPQuality` objects per address.
  `best_ips(ips)` returns the best and second-best addresses (or `None`).
  `start_probe_loop()` probes suspect addresses every 30 seconds with a
  root-zone A query over UDP and marks those that answer as recovered.
  `reset_global_pool()` replaces the shared pool.
- `rec53.server` – `DNSServer` listens on UDP and TCP at one address and
  answers with `serve_dns(request, udp)`. The reply always carries the
  query's question; resolution errors become SERVFAIL. UDP replies are cut
  down by `truncate_response` to `max_udp_size(request)` (the EDNS0 buffer
  size, or 512), setting TC.
- `rec53.metrics` – `CounterVec`, `GaugeVec`, `HistogramVec`, a `Registry`
  exposing them in the Prometheus text format, `Metric` for the resolver's
  counters, latency histogram and per-address latency gauges, and
  `MetricServer` serving a registry over HTTP at `/metric`.
- `rec53.log` – `init_logger(path)` attaches a rotating log file (1 MiB,
  5 backups, default `./log/rec53.log`); `set_log_level` and
  `get_log_level` adjust and read the level.

## Using it

```python
import dns.message
from rec53.resolver import Resolver
from rec53.server import DNSServer
from rec53.states import UpstreamResult

def query_upstream(request, response):
    # Send request to a server delegated in response.authority /
    # response.additional and fill response in place.
    ...
    return UpstreamResult.NO_ERROR

server = DNSServer("127.0.0.1:5353", resolver=Resolver(query_upstream=query_upstream))
errors = server.run()          # a queue; receives listener errors, then None
print(server.udp_addr, server.tcp_addr)
# ... serve queries ...
server.shutdown(5.0)
```

Picking upstream addresses:

```python
from rec53.ip_pool import IPPool
from rec53.ip_quality import IPQuality

pool = IPPool()
fast = IPQuality()
for _ in range(10):
    fast.record_latency(100)
pool.set("192.0.2.1", fast)

best, second = pool.best_ips(["192.0.2.1", "192.0.2.2"])
```

Metrics and logging:

```python
from rec53.log import init_logger, set_log_level
from rec53.metrics import get_metric, init_metric, shutdown_metric

init_logger("./log/rec53.log")
set_log_level("INFO")

init_metric("127.0.0.1:9999")     # serves /metric
get_metric().in_counter_add("request", "example.com.", "A")
shutdown_metric(2.0)
```

## What the package does not do

- It does not query upstream nameservers during resolution. The
  `QUERY_UPSTREAM` step is the `query_upstream` callable given to `Resolver`;
  without one, any query that is not answered from the cache fails with
  SERVFAIL. Recording latencies and failures into the `IPPool` is likewise
  left to that callable.
- It ships no root hints: `Resolver` uses an empty root glue message unless
  one is passed in.
- It does not cache positive answers or delegations on its own; only
  negative answers are cached by `classify_response`.
- There is no command-line program and no configuration file; the server is
  started from Python.

## Requirements

Python 3.10 or later and `dnspython`.