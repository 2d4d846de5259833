"""Pool of upstream address qualities with best-address selection and probing."""

from __future__ import annotations

import threading
from typing import Callable, Iterable

import dns.message
import dns.query
import dns.rdatatype

from rec53.ip_quality import IPQuality
from rec53.log import logger

PROBE_INTERVAL = 30.0
PROBE_TIMEOUT = 3.0

Probe = Callable[[str, float], None]


def _udp_probe(ip: str, timeout: float) -> None:
    """Send a root-zone A query to ip over UDP; raise if no answer arrives."""
    query = dns.message.make_query(".", dns.rdatatype.A)
    dns.query.udp(query, ip, timeout=timeout, port=53)


class IPPool:
    """Quality trackers keyed by address, plus a background recovery prober."""

    def __init__(
        self,
        probe: Probe | None = None,
        probe_interval: float = PROBE_INTERVAL,
        probe_timeout: float = PROBE_TIMEOUT,
    ) -> None:
        self._pool: dict[str, IPQuality] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._probe = probe if probe is not None else _udp_probe
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout

    @property
    def stopped(self) -> bool:
        """True once shutdown has been requested."""
        return self._stop.is_set()

    @property
    def probing(self) -> bool:
        """True while the background probe thread is running."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop the probe thread; raise TimeoutError if it outlives timeout."""
        self._stop.set()
        thread = self._thread
        if thread is None:
            return
        thread.join(timeout)
        if thread.is_alive():
            raise TimeoutError("IP pool probe loop did not stop in time")

    def start_probe_loop(self) -> None:
        """Start the background prober; further calls do nothing."""
        with self._start_lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._probe_loop, name="rec53-ip-probe", daemon=True
            )
            self._thread.start()
        logger.debug("IP pool probe loop started")

    def _probe_loop(self) -> None:
        logger.debug("probe loop: entering periodic check loop")
        while not self._stop.wait(self.probe_interval):
            self.probe_suspects()
        logger.debug("probe loop: stopped, exiting")

    def probe_suspects(self) -> None:
        """Probe every suspect address and mark those that answer as recovered."""
        with self._lock:
            candidates = [ip for ip, q in self._pool.items() if q.should_probe()]
        if not candidates:
            return
        logger.debug("probe loop: probing %d SUSPECT IPs", len(candidates))
        for ip in candidates:
            if self._stop.is_set():
                return
            try:
                self._probe(ip, self.probe_timeout)
            except Exception as exc:  # any transport or protocol failure
                logger.debug("probe loop: IP %s probe failed (will retry): %s", ip, exc)
                continue
            quality = self.get(ip)
            if quality is None:
                continue
            quality.reset_for_probe()
            logger.debug("probe loop: IP %s recovered from SUSPECT state", ip)

    def best_ips(self, ips: Iterable[str]) -> tuple[str | None, str | None]:
        """Return the best and second-best addresses by score (lower is better).

        Addresses not seen before get a fresh tracker. Missing places are None.
        """
        with self._lock:
            entries = [(ip, self._pool.setdefault(ip, IPQuality())) for ip in ips]
        ranked = sorted(((q.score(), ip) for ip, q in entries), key=lambda item: item[0])
        best = ranked[0][1] if ranked else None
        second = ranked[1][1] if len(ranked) > 1 else None
        return best, second

    def get(self, ip: str) -> IPQuality | None:
        with self._lock:
            return self._pool.get(ip)

    def set(self, ip: str, quality: IPQuality) -> None:
        with self._lock:
            self._pool[ip] = quality


global_pool = IPPool()


def reset_global_pool() -> IPPool:
    """Stop the shared pool and replace it with a fresh one."""
    global global_pool
    try:
        global_pool.shutdown(2.0)
    except TimeoutError as exc:
        logger.warning("shared IP pool shutdown: %s", exc)
    global_pool = IPPool()
    return global_pool