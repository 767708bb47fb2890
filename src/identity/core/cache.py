"""Thread-safe key/value cache with per-entry expiry.

Each directory resolver owns two instances: a coarse one holding the whole
prefetched directory and a fine one holding individual lookup outcomes
(including cacheable "not found" results).

Expiry is lazy: ``get`` on an expired entry evicts it and reports a miss, so
``sweep`` only reclaims memory and is never required for correctness.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

V = TypeVar("V")

# Distinguishes "not cached" from a cached None
MISSING: Any = object()


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A cached value and the clock reading when it was stored."""

    value: V
    created_at: float


class TTLCache(Generic[V]):
    """In-memory cache whose entries are visible for ``ttl`` seconds.

    A single mutex guards the dict. Critical sections only touch the dict,
    never perform I/O, so contention stays low even with many workers.

    Args:
        ttl: Seconds an entry stays visible after ``set``.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.created_at > self._ttl

    def get(self, key: Hashable, default: Any = None) -> V | Any:
        """Return the live value for ``key`` or ``default``.

        An expired entry is removed on the way out.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, created_at=self._clock())

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, MISSING) is not MISSING

    def __len__(self) -> int:
        # Physical size; expired-but-unswept entries are counted
        with self._lock:
            return len(self._entries)
