"""Prometheus-style metrics for queries, responses, latency and upstream quality."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable
from urllib.parse import urlsplit

from rec53.log import logger

DEFAULT_METRIC_ADDR = ":9999"
METRIC_PATH = "/metric"
LATENCY_BUCKETS = (10.0, 50.0, 200.0, 1000.0, 3000.0)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


def _format_bound(bound: float) -> str:
    return "+Inf" if math.isinf(bound) else f"{bound:g}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class _Collector:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, labelnames: Iterable[str]) -> None:
        self.name = name
        self.help = help_text
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()

    def _key(self, labels: dict) -> tuple[str, ...]:
        if set(labels) != set(self.labelnames):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.labelnames)}, got {sorted(labels)}"
            )
        return tuple(str(labels[n]) for n in self.labelnames)

    def _label_text(self, key: tuple[str, ...], extra: tuple[tuple[str, str], ...] = ()) -> str:
        pairs = [*zip(self.labelnames, key), *extra]
        if not pairs:
            return ""
        return "{" + ",".join(f'{n}="{_escape(v)}"' for n, v in pairs) + "}"

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"]


class CounterVec(_Collector):
    """A monotonically increasing counter per label set."""

    kind = "counter"

    def __init__(self, name: str, help_text: str, labelnames: Iterable[str]) -> None:
        super().__init__(name, help_text, labelnames)
        self._values: dict[tuple[str, ...], float] = {}

    def inc(self, **kwargs: str) -> None:
        key = self._key(kwargs)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + 1.0

    def value(self, **kwargs: str) -> float:
        key = self._key(kwargs)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> str:
        with self._lock:
            items = sorted(self._values.items())
        lines = self._header()
        lines.extend(f"{self.name}{self._label_text(k)} {_format_value(v)}" for k, v in items)
        return "\n".join(lines)


class GaugeVec(_Collector):
    """A value per label set that can be set to anything."""

    kind = "gauge"

    def __init__(self, name: str, help_text: str, labelnames: Iterable[str]) -> None:
        super().__init__(name, help_text, labelnames)
        self._values: dict[tuple[str, ...], float] = {}

    def set(self, value: float, **kwargs: str) -> None:
        key = self._key(kwargs)
        with self._lock:
            self._values[key] = float(value)

    def value(self, **kwargs: str) -> float:
        key = self._key(kwargs)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> str:
        with self._lock:
            items = sorted(self._values.items())
        lines = self._header()
        lines.extend(f"{self.name}{self._label_text(k)} {_format_value(v)}" for k, v in items)
        return "\n".join(lines)


@dataclass(frozen=True)
class HistogramSnapshot:
    """Cumulative bucket counts (upper bound to count), sum and count."""

    buckets: dict[float, int]
    sum: float
    count: int


class HistogramVec(_Collector):
    """Observations sorted into fixed buckets per label set."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help_text: str,
        labelnames: Iterable[str],
        buckets: Iterable[float] = LATENCY_BUCKETS,
    ) -> None:
        super().__init__(name, help_text, labelnames)
        bounds = sorted(float(b) for b in buckets)
        if not bounds or not math.isinf(bounds[-1]):
            bounds.append(math.inf)
        self.buckets = tuple(bounds)
        self._states: dict[tuple[str, ...], tuple[list[int], list[float]]] = {}

    def observe(self, value: float, **kwargs: str) -> None:
        key = self._key(kwargs)
        value = float(value)
        with self._lock:
            counts, total = self._states.setdefault(key, ([0] * len(self.buckets), [0.0]))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
                    break
            total[0] += value

    def snapshot(self, **kwargs: str) -> HistogramSnapshot:
        key = self._key(kwargs)
        with self._lock:
            state = self._states.get(key)
            counts = list(state[0]) if state else [0] * len(self.buckets)
            total = state[1][0] if state else 0.0
        cumulative: dict[float, int] = {}
        running = 0
        for bound, count in zip(self.buckets, counts):
            running += count
            cumulative[bound] = running
        return HistogramSnapshot(buckets=cumulative, sum=total, count=running)

    def render(self) -> str:
        with self._lock:
            keys = sorted(self._states)
        lines = self._header()
        for key in keys:
            snap = self.snapshot(**dict(zip(self.labelnames, key)))
            for bound, count in snap.buckets.items():
                labels = self._label_text(key, (("le", _format_bound(bound)),))
                lines.append(f"{self.name}_bucket{labels} {count}")
            lines.append(f"{self.name}_sum{self._label_text(key)} {_format_value(snap.sum)}")
            lines.append(f"{self.name}_count{self._label_text(key)} {snap.count}")
        return "\n".join(lines)


class Registry:
    """A set of collectors exposed together, keyed by metric name."""

    def __init__(self) -> None:
        self._collectors: dict[str, _Collector] = {}
        self._lock = threading.Lock()

    def register(self, collector: _Collector) -> None:
        with self._lock:
            if collector.name in self._collectors:
                raise ValueError(f"duplicate metrics collector registration: {collector.name}")
            self._collectors[collector.name] = collector

    def unregister(self, collector: _Collector) -> bool:
        with self._lock:
            if self._collectors.get(collector.name) is collector:
                del self._collectors[collector.name]
                return True
            return False

    def __contains__(self, collector: object) -> bool:
        with self._lock:
            return any(c is collector for c in self._collectors.values())

    def expose(self) -> str:
        with self._lock:
            collectors = [self._collectors[n] for n in sorted(self._collectors)]
        if not collectors:
            return ""
        return "\n".join(c.render() for c in collectors) + "\n"


DEFAULT_REGISTRY = Registry()

IN_COUNTER = CounterVec("rec53_query_counter", "rec53 query counter", ("stage", "name", "type"))
OUT_COUNTER = CounterVec(
    "rec53_response_counter", "rec53 response counter", ("stage", "name", "type", "code")
)
LATENCY_HISTOGRAM = HistogramVec(
    "rec53_latency", "rec53 latency", ("stage", "name", "type", "code"), LATENCY_BUCKETS
)
IP_QUALITY_P50 = GaugeVec(
    "rec53_ipv2_p50_latency_ms", "rec53 IP quality V2 P50 latency in milliseconds", ("ip",)
)
IP_QUALITY_P95 = GaugeVec(
    "rec53_ipv2_p95_latency_ms", "rec53 IP quality V2 P95 latency in milliseconds", ("ip",)
)
IP_QUALITY_P99 = GaugeVec(
    "rec53_ipv2_p99_latency_ms", "rec53 IP quality V2 P99 latency in milliseconds", ("ip",)
)

COLLECTORS = (
    IN_COUNTER,
    OUT_COUNTER,
    LATENCY_HISTOGRAM,
    IP_QUALITY_P50,
    IP_QUALITY_P95,
    IP_QUALITY_P99,
)


class Metric:
    """Records resolver events into the shared collectors."""

    def __init__(self, registry: Registry | None = None) -> None:
        self.registry = registry

    def in_counter_add(self, stage: str, name: str, qtype: str) -> None:
        IN_COUNTER.inc(stage=stage, name=name, type=qtype)

    def out_counter_add(self, stage: str, name: str, qtype: str, code: str) -> None:
        OUT_COUNTER.inc(stage=stage, name=name, type=qtype, code=code)

    def latency_histogram_observe(
        self, stage: str, name: str, qtype: str, code: str, latency: float
    ) -> None:
        LATENCY_HISTOGRAM.observe(latency, stage=stage, name=name, type=qtype, code=code)

    def ip_quality_gauge_set(self, ip: str, p50: float, p95: float, p99: float) -> None:
        IP_QUALITY_P50.set(p50, ip=ip)
        IP_QUALITY_P95.set(p95, ip=ip)
        IP_QUALITY_P99.set(p99, ip=ip)

    def register(self) -> None:
        if self.registry is None:
            raise RuntimeError("metric has no registry to register with")
        for collector in COLLECTORS:
            self.registry.register(collector)


class _MetricsHTTPServer(ThreadingHTTPServer):
    def __init__(self, address: tuple[str, int], registry: Registry, path: str) -> None:
        self.registry = registry
        self.metric_path = path
        super().__init__(address, _MetricsHandler)


class _MetricsHandler(BaseHTTPRequestHandler):
    server: _MetricsHTTPServer

    def do_GET(self) -> None:
        if urlsplit(self.path).path != self.server.metric_path:
            self.send_error(404)
            return
        body = self.server.registry.expose().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: object) -> None:
        logger.debug("metrics http: " + fmt, *args)


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {addr!r}")
    return host.strip("[]"), int(port)


class MetricServer:
    """HTTP endpoint serving a registry in text exposition format."""

    def __init__(
        self, addr: str = DEFAULT_METRIC_ADDR, registry: Registry | None = None, path: str = METRIC_PATH
    ) -> None:
        self.addr = addr
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.path = path
        self._httpd: _MetricsHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> str | None:
        """The bound "host:port", or None when not serving."""
        if self._httpd is None:
            return None
        host, port = self._httpd.server_address[:2]
        return f"{host}:{port}"

    def start(self) -> None:
        if self._httpd is not None:
            return
        self._httpd = _MetricsHTTPServer(_split_addr(self.addr), self.registry, self.path)
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="rec53-metrics", daemon=True
        )
        self._thread.start()

    def shutdown(self, timeout: float | None = None) -> None:
        httpd, thread = self._httpd, self._thread
        if httpd is None:
            return
        self._httpd = None
        self._thread = None
        stopper = threading.Thread(target=httpd.shutdown, daemon=True)
        stopper.start()
        stopper.join(timeout)
        if stopper.is_alive():
            raise TimeoutError("metrics server did not stop in time")
        httpd.server_close()
        if thread is not None:
            thread.join(timeout)


_metric: Metric | None = None
_server: MetricServer | None = None


def init_metric(addr: str = DEFAULT_METRIC_ADDR) -> MetricServer:
    """Register the collectors globally and start serving them on addr."""
    global _metric, _server
    shutdown_metric()
    metric = Metric(DEFAULT_REGISTRY)
    for collector in COLLECTORS:
        DEFAULT_REGISTRY.unregister(collector)
    metric.register()
    server = MetricServer(addr, DEFAULT_REGISTRY)
    server.start()
    _metric, _server = metric, server
    return server


def shutdown_metric(timeout: float | None = None) -> None:
    """Stop the global metrics server if one is running."""
    global _server
    if _server is not None:
        server, _server = _server, None
        server.shutdown(timeout)


def init_metric_for_test() -> Metric:
    """Install a metric with no registry and no HTTP listener."""
    global _metric
    _metric = Metric()
    return _metric


def get_metric() -> Metric:
    """Return the global metric, creating an unregistered one if needed."""
    global _metric
    if _metric is None:
        _metric = Metric()
    return _metric