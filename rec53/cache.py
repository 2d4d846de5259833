"""Expiring cache of DNS messages that stores and returns private copies."""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass
from typing import Callable

import dns.message

DEFAULT_TTL = 5 * 60
CLEANUP_INTERVAL = 10 * 60


def cache_key(name: str, qtype: int) -> str:
    """Key combining owner name and numeric query type, e.g. "example.com.:1"."""
    return f"{name}:{int(qtype)}"


@dataclass
class _Entry:
    message: dns.message.Message
    expires_at: float


class MessageCache:
    """Thread-safe TTL cache; a TTL of 0 means the default expiration."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        cleanup_interval: float = CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._items: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def get(self, key: str) -> dns.message.Message | None:
        """Return a copy of the unexpired message under key, or None."""
        with self._lock:
            entry = self._items.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            message = entry.message
        return copy.deepcopy(message)

    def set(self, key: str, message: dns.message.Message, ttl: int) -> None:
        """Store a copy of message for ttl seconds."""
        if ttl < 0:
            raise ValueError("ttl must not be negative")
        stored = copy.deepcopy(message)
        lifetime = ttl if ttl > 0 else self.default_ttl
        with self._lock:
            now = self._clock()
            self._items[key] = _Entry(stored, now + lifetime)
            if now - self._last_cleanup >= self.cleanup_interval:
                self._purge(now)

    def get_by_type(self, name: str, qtype: int) -> dns.message.Message | None:
        return self.get(cache_key(name, qtype))

    def set_by_type(self, name: str, qtype: int, message: dns.message.Message, ttl: int) -> None:
        self.set(cache_key(name, qtype), message, ttl)

    def delete_expired(self) -> None:
        with self._lock:
            self._purge(self._clock())

    def flush(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        """Number of stored items, including expired ones not yet purged."""
        with self._lock:
            return len(self._items)

    def _purge(self, now: float) -> None:
        for key in [k for k, e in self._items.items() if e.expires_at <= now]:
            del self._items[key]
        self._last_cleanup = now


DEFAULT_CACHE = MessageCache()