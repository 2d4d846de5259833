"""Upstream server quality tracking from a sliding window of round-trip times."""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import IntEnum
from typing import Callable

WINDOW_SIZE = 64
INIT_IP_LATENCY = 1000
MAX_IP_LATENCY = 10000
PROBE_THROTTLE = 5.0

_DEGRADED_LIMIT = 3
_SUSPECT_LIMIT = 6


class IPState(IntEnum):
    """Health of an upstream address."""

    ACTIVE = 0
    DEGRADED = 1
    SUSPECT = 2
    RECOVERED = 3


_STATE_WEIGHTS = {
    IPState.ACTIVE: 1.0,
    IPState.DEGRADED: 1.5,
    IPState.SUSPECT: 100.0,
    IPState.RECOVERED: 1.1,
}


class IPQuality:
    """Latency percentiles, confidence and failure state of one upstream address.

    All latencies are in milliseconds. Every method is thread-safe.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: deque[int] = deque(maxlen=WINDOW_SIZE)
        self._p50 = INIT_IP_LATENCY
        self._p95 = INIT_IP_LATENCY
        self._p99 = INIT_IP_LATENCY
        self._confidence = 0
        self._fail_count = 0
        self._state = IPState.ACTIVE
        self._last_update = clock()
        self._last_failure: float | None = None

    @property
    def p50(self) -> int:
        with self._lock:
            return self._p50

    @property
    def p95(self) -> int:
        with self._lock:
            return self._p95

    @property
    def p99(self) -> int:
        with self._lock:
            return self._p99

    @property
    def confidence(self) -> int:
        """Trust in the percentiles, 0 to 100; ten samples give full trust."""
        with self._lock:
            return self._confidence

    @property
    def state(self) -> IPState:
        with self._lock:
            return self._state

    @property
    def fail_count(self) -> int:
        with self._lock:
            return self._fail_count

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._samples)

    @property
    def samples(self) -> tuple[int, ...]:
        """The samples in the window, oldest first."""
        with self._lock:
            return tuple(self._samples)

    @property
    def last_update(self) -> float:
        with self._lock:
            return self._last_update

    @property
    def last_failure(self) -> float | None:
        with self._lock:
            return self._last_failure

    def record_latency(self, latency: int) -> None:
        """Add a successful round trip; this also clears any failure state."""
        with self._lock:
            self._samples.append(int(latency))
            self._confidence = min(len(self._samples) * 10, 100)
            self._fail_count = 0
            self._state = IPState.ACTIVE
            self._update_percentiles()
            self._last_update = self._clock()

    def _update_percentiles(self) -> None:
        ordered = sorted(self._samples)
        count = len(ordered)
        if not count:
            return
        self._p50 = ordered[count // 2]
        self._p95 = ordered[min(int(count * 0.95), count - 1)]
        self._p99 = ordered[min(int(count * 0.99), count - 1)]

    def record_failure(self) -> None:
        """Count a failure: 1-3 degrade with a 20% penalty, 4 or more mark suspect."""
        with self._lock:
            self._fail_count += 1
            self._last_failure = self._clock()
            if self._fail_count <= _DEGRADED_LIMIT:
                self._state = IPState.DEGRADED
                self._p50 = min(int(self._p50 * 1.2), MAX_IP_LATENCY)
            elif self._fail_count <= _SUSPECT_LIMIT:
                self._state = IPState.SUSPECT
                self._p50 = self._p95 = self._p99 = MAX_IP_LATENCY
            else:
                self._state = IPState.SUSPECT

    def reset_for_probe(self) -> None:
        """Mark the address as recovering after a successful probe."""
        with self._lock:
            self._fail_count = 0
            self._state = IPState.RECOVERED
            self._last_update = self._clock()

    def should_probe(self) -> bool:
        """True for a suspect address whose last failure is at least 5 s old."""
        with self._lock:
            if self._state != IPState.SUSPECT:
                return False
            if self._last_failure is not None and self._clock() - self._last_failure < PROBE_THROTTLE:
                return False
            return True

    def score(self) -> float:
        """Composite score, lower is better: p50 x confidence penalty x state weight."""
        with self._lock:
            confidence_mult = 1.0 + (100 - self._confidence) * 0.01
            weight = _STATE_WEIGHTS.get(self._state, _STATE_WEIGHTS[IPState.ACTIVE])
            return float(self._p50) * confidence_mult * weight