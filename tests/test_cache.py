import threading

import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from rec53.cache import MessageCache, cache_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def message_with(name, rdtype, text, ttl=300):
    msg = dns.message.Message()
    msg.answer.append(dns.rrset.from_text(name, ttl, "IN", rdtype, text))
    return msg


def first_rdata(msg):
    return list(msg.answer[0])[0]


@pytest.mark.parametrize(
    "domain, qtype, expected",
    [
        ("example.com.", dns.rdatatype.A, "example.com.:1"),
        ("example.com.", dns.rdatatype.AAAA, "example.com.:28"),
        ("google.com.", dns.rdatatype.MX, "google.com.:15"),
        ("test.com.", dns.rdatatype.TXT, "test.com.:16"),
    ],
)
def test_cache_key(domain, qtype, expected):
    assert cache_key(domain, qtype) == expected


def test_empty_after_flush():
    cache = MessageCache()
    cache.set("a.:1", message_with("a.", "A", "192.0.2.1"), 300)
    cache.flush()
    assert len(cache) == 0


def test_cache_by_type():
    cache = MessageCache()
    domain = "cache-type-test.example.com."
    cache.set_by_type(domain, dns.rdatatype.A, message_with(domain, "A", "192.0.2.1"), 300)
    cache.set_by_type(domain, dns.rdatatype.AAAA, message_with(domain, "AAAA", "2001:db8::1"), 300)

    got_a = cache.get_by_type(domain, dns.rdatatype.A)
    assert got_a is not None and len(got_a.answer) == 1
    assert first_rdata(got_a).address == "192.0.2.1"

    got_aaaa = cache.get_by_type(domain, dns.rdatatype.AAAA)
    assert got_aaaa is not None and len(got_aaaa.answer) == 1
    assert first_rdata(got_aaaa).address == "2001:db8::1"

    assert cache.get_by_type(domain, dns.rdatatype.MX) is None


def test_cache_isolation():
    cache = MessageCache()
    domain = "isolation-test.example.com."
    original = message_with(domain, "A", "192.0.2.1")
    cache.set_by_type(domain, dns.rdatatype.A, original, 300)

    original.answer[0].clear()
    copy1 = cache.get_by_type(domain, dns.rdatatype.A)
    copy1.answer[0].clear()
    copy1.answer.append(dns.rrset.from_text(domain, 300, "IN", "A", "192.0.2.100"))

    copy2 = cache.get_by_type(domain, dns.rdatatype.A)
    assert len(copy2.answer) == 1
    assert first_rdata(copy2).address == "192.0.2.1"


def test_set_and_get():
    cache = MessageCache()
    key = "test.example.com.:1"
    cache.set(key, message_with("test.example.com.", "A", "192.0.2.1"), 300)
    got = cache.get(key)
    assert got is not None
    assert len(got.answer) == 1
    assert cache.get("nonexistent.:1") is None
    assert len(cache) == 1


def test_expiration():
    clock = FakeClock()
    cache = MessageCache(clock=clock)
    domain = "expire-test.example.com."
    cache.set_by_type(domain, dns.rdatatype.A, message_with(domain, "A", "192.0.2.1", ttl=1), 1)
    assert cache.get_by_type(domain, dns.rdatatype.A) is not None
    clock.now += 2
    assert cache.get_by_type(domain, dns.rdatatype.A) is None
    assert len(cache) == 1
    cache.delete_expired()
    assert len(cache) == 0


def test_zero_ttl_uses_default():
    clock = FakeClock()
    cache = MessageCache(clock=clock)
    cache.set("zero.:1", message_with("zero.", "A", "192.0.2.1"), 0)
    clock.now += 299
    assert cache.get("zero.:1") is not None
    clock.now += 2
    assert cache.get("zero.:1") is None


def test_negative_ttl_rejected():
    cache = MessageCache()
    with pytest.raises(ValueError):
        cache.set("neg.:1", message_with("neg.", "A", "192.0.2.1"), -1)


def test_periodic_cleanup_on_set():
    clock = FakeClock()
    cache = MessageCache(cleanup_interval=600, clock=clock)
    cache.set("old.:1", message_with("old.", "A", "192.0.2.1"), 1)
    clock.now += 601
    cache.set("new.:1", message_with("new.", "A", "192.0.2.2"), 300)
    assert len(cache) == 1
    assert cache.get("new.:1") is not None


def test_concurrent_access():
    cache = MessageCache()
    domain = "concurrent.example.com."

    def writer():
        for _ in range(100):
            cache.set_by_type(domain, dns.rdatatype.A, message_with(domain, "A", "192.0.2.1"), 300)

    def reader():
        for _ in range(100):
            cache.get_by_type(domain, dns.rdatatype.A)

    def cleaner():
        for _ in range(10):
            cache.delete_expired()

    threads = [threading.Thread(target=writer) for _ in range(20)]
    threads += [threading.Thread(target=reader) for _ in range(20)]
    threads += [threading.Thread(target=cleaner) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    got = cache.get_by_type(domain, dns.rdatatype.A)
    assert first_rdata(got).address == "192.0.2.1"
    assert len(cache) == 1


def test_flush():
    cache = MessageCache()
    for i in range(10):
        name = f"flush{i}.example.com."
        cache.set_by_type(name, dns.rdatatype.A, message_with(name, "A", "192.0.2.1"), 300)
    assert len(cache) == 10
    cache.flush()
    assert len(cache) == 0


def test_multiple_types_same_domain():
    cache = MessageCache()
    domain = "multi.example.com."
    cache.set_by_type(domain, dns.rdatatype.A, message_with(domain, "A", "192.0.2.1"), 300)
    cache.set_by_type(domain, dns.rdatatype.AAAA, message_with(domain, "AAAA", "2001:db8::1"), 300)
    cache.set_by_type(domain, dns.rdatatype.MX, message_with(domain, "MX", "10 mail.example.com."), 300)
    assert len(cache) == 3
    for qtype in (dns.rdatatype.A, dns.rdatatype.AAAA, dns.rdatatype.MX):
        got = cache.get_by_type(domain, qtype)
        assert got is not None
        assert got.answer[0].rdtype == qtype