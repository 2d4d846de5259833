import threading
import urllib.error
import urllib.request

import pytest

from rec53.metrics import (
    DEFAULT_REGISTRY,
    IN_COUNTER,
    IP_QUALITY_P50,
    IP_QUALITY_P95,
    IP_QUALITY_P99,
    LATENCY_HISTOGRAM,
    OUT_COUNTER,
    CounterVec,
    GaugeVec,
    HistogramVec,
    Metric,
    MetricServer,
    Registry,
    get_metric,
    init_metric,
    init_metric_for_test,
    shutdown_metric,
)


def fresh_metric():
    metric = Metric(Registry())
    metric.register()
    return metric


def test_in_counter_add():
    m = fresh_metric()
    labels = dict(stage="request", name="incounter.example.com.", type="A")
    before = IN_COUNTER.value(**labels)
    m.in_counter_add("request", "incounter.example.com.", "A")
    assert IN_COUNTER.value(**labels) == before + 1
    m.in_counter_add("request", "incounter.example.com.", "A")
    assert IN_COUNTER.value(**labels) == before + 2


def test_out_counter_add():
    m = fresh_metric()
    ok = dict(stage="response", name="outcounter.example.com.", type="A", code="NOERROR")
    fail = dict(ok, code="SERVFAIL")
    before_ok = OUT_COUNTER.value(**ok)
    before_fail = OUT_COUNTER.value(**fail)
    m.out_counter_add("response", "outcounter.example.com.", "A", "NOERROR")
    assert OUT_COUNTER.value(**ok) == before_ok + 1
    m.out_counter_add("response", "outcounter.example.com.", "A", "SERVFAIL")
    assert OUT_COUNTER.value(**fail) == before_fail + 1


def test_latency_histogram_observe():
    m = fresh_metric()
    labels = dict(stage="query", name="histo.example.com.", type="A", code="NOERROR")
    m.latency_histogram_observe("query", "histo.example.com.", "A", "NOERROR", 50.5)
    m.latency_histogram_observe("query", "histo.example.com.", "A", "NOERROR", 100.0)
    m.latency_histogram_observe("query", "histo.example.com.", "A", "NOERROR", 200.0)
    snap = LATENCY_HISTOGRAM.snapshot(**labels)
    assert snap.count == 3
    assert snap.sum == pytest.approx(350.5)
    assert snap.buckets[10.0] == 0
    assert snap.buckets[50.0] == 0
    assert snap.buckets[200.0] == 3
    assert snap.buckets[3000.0] == 3
    assert snap.buckets[float("inf")] == 3


def test_ip_quality_gauge_set():
    m = fresh_metric()
    m.ip_quality_gauge_set("192.0.2.1", 50.0, 150.0, 250.0)
    assert IP_QUALITY_P50.value(ip="192.0.2.1") == 50.0
    assert IP_QUALITY_P95.value(ip="192.0.2.1") == 150.0
    assert IP_QUALITY_P99.value(ip="192.0.2.1") == 250.0
    m.ip_quality_gauge_set("192.0.2.1", 100.0, 200.0, 300.0)
    assert IP_QUALITY_P50.value(ip="192.0.2.1") == 100.0
    assert IP_QUALITY_P95.value(ip="192.0.2.1") == 200.0
    assert IP_QUALITY_P99.value(ip="192.0.2.1") == 300.0
    m.ip_quality_gauge_set("192.0.2.2", 75.0, 175.0, 275.0)
    assert IP_QUALITY_P50.value(ip="192.0.2.2") == 75.0
    assert IP_QUALITY_P50.value(ip="192.0.2.1") == 100.0


def test_register_exposes_all_collectors():
    registry = Registry()
    m = Metric(registry)
    m.register()
    m.in_counter_add("test", "test.com.", "A")
    text = registry.expose()
    for name in (
        "rec53_query_counter",
        "rec53_response_counter",
        "rec53_latency",
        "rec53_ipv2_p50_latency_ms",
        "rec53_ipv2_p95_latency_ms",
        "rec53_ipv2_p99_latency_ms",
    ):
        assert f"# TYPE {name} " in text
    assert IN_COUNTER.value(stage="test", name="test.com.", type="A") >= 1


def test_duplicate_registration_rejected():
    m = fresh_metric()
    with pytest.raises(ValueError):
        m.register()


def test_unregister():
    registry = Registry()
    counter = CounterVec("u_counter", "help", ("a",))
    registry.register(counter)
    assert counter in registry
    assert registry.unregister(counter) is True
    assert registry.unregister(counter) is False
    assert registry.expose() == ""


def test_wrong_labels_rejected():
    counter = CounterVec("l_counter", "help", ("a", "b"))
    with pytest.raises(ValueError):
        counter.inc(a="x")
    with pytest.raises(ValueError):
        counter.inc(a="x", b="y", c="z")


def test_counter_render_format():
    counter = CounterVec("t_counter", "help text", ("a",))
    counter.inc(a="x")
    assert counter.render() == (
        "# HELP t_counter help text\n"
        "# TYPE t_counter counter\n"
        't_counter{a="x"} 1.0'
    )


def test_label_values_are_escaped():
    gauge = GaugeVec("e_gauge", "help", ("ip",))
    gauge.set(2, ip='a"b')
    assert 'e_gauge{ip="a\\"b"} 2.0' in gauge.render()


def test_histogram_render():
    histogram = HistogramVec("h_lat", "help", ("stage",), (10, 200))
    histogram.observe(5, stage="s")
    histogram.observe(150, stage="s")
    text = histogram.render()
    assert 'h_lat_bucket{stage="s",le="10"} 1' in text
    assert 'h_lat_bucket{stage="s",le="200"} 2' in text
    assert 'h_lat_bucket{stage="s",le="+Inf"} 2' in text
    assert 'h_lat_sum{stage="s"} 155.0' in text
    assert 'h_lat_count{stage="s"} 2' in text


def test_concurrent_access():
    m = fresh_metric()
    labels = dict(stage="concurrent", name="test.com.", type="A")
    before = IN_COUNTER.value(**labels)

    def work():
        for j in range(100):
            m.in_counter_add("concurrent", "test.com.", "A")
            m.out_counter_add("concurrent", "test.com.", "A", "NOERROR")
            m.latency_histogram_observe("concurrent", "test.com.", "A", "NOERROR", float(j))

    threads = [threading.Thread(target=work) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert IN_COUNTER.value(**labels) == before + 1000


def test_many_updates_all_counted():
    m = init_metric_for_test()
    labels = dict(stage="iter", name="bench.example.com.", type="A")
    before = IN_COUNTER.value(**labels)
    for _ in range(1000):
        m.in_counter_add("iter", "bench.example.com.", "A")
        m.ip_quality_gauge_set("1.2.3.4", 10, 20, 30)
    assert IN_COUNTER.value(**labels) == before + 1000
    assert IP_QUALITY_P99.value(ip="1.2.3.4") == 30.0


def test_metrics_endpoint():
    registry = Registry()
    m = Metric(registry)
    m.register()
    m.in_counter_add("test", "example.com.", "A")
    server = MetricServer("127.0.0.1:0", registry)
    server.start()
    try:
        with urllib.request.urlopen(f"http://{server.address}/metric", timeout=5) as resp:
            assert resp.status == 200
            body = resp.read().decode()
        assert "rec53_query_counter" in body
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            urllib.request.urlopen(f"http://{server.address}/other", timeout=5)
        assert excinfo.value.code == 404
    finally:
        server.shutdown(5)
    assert server.address is None


def test_init_metric_and_shutdown():
    server = init_metric("127.0.0.1:0")
    address = server.address
    try:
        assert address.startswith("127.0.0.1:")
        assert get_metric().registry is DEFAULT_REGISTRY
        assert IN_COUNTER in DEFAULT_REGISTRY
        with urllib.request.urlopen(f"http://{address}/metric", timeout=5) as resp:
            assert "rec53_latency" in resp.read().decode()
    finally:
        shutdown_metric(2)
    with pytest.raises(OSError):
        urllib.request.urlopen(f"http://{address}/metric", timeout=2)


def test_init_metric_for_test_has_no_registry():
    m = init_metric_for_test()
    assert get_metric() is m
    assert m.registry is None
    with pytest.raises(RuntimeError):
        m.register()