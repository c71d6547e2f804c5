"""
Result cache: last samples per (aggregation identity, server name).

Policy per aggregation:
  - sticky: valid until evicted (push mode without explicit cache, or the
    CACHE_STICKY sentinel)
  - ttl > 0: valid until now + ttl
  - otherwise: not cached, every scrape re-executes

Reads evict expired entries. Every read, write and eviction goes through
one lock which the change stream watchers share with the scrape workers.

Each key carries a generation, bumped by evict(). An execution records
the generation before it queries and passes it to put(); a write whose
generation has moved in the meantime is dropped, so samples read before a
change event never become a sticky entry.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import CACHE_STICKY, Mode, Sample

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class CachePolicy:
    ttl: float = 0.0
    sticky: bool = False

    @property
    def enabled(self) -> bool:
        return self.sticky or self.ttl > 0

    @classmethod
    def resolve(cls, cache: Optional[float], mode: Mode) -> "CachePolicy":
        """Policy for an aggregation's effective cache setting and mode."""
        if cache == CACHE_STICKY or (mode == Mode.PUSH and not cache):
            return cls(sticky=True)
        if cache is not None and cache > 0:
            return cls(ttl=float(cache))
        return cls()


@dataclass
class _CacheEntry:
    samples: Tuple[Sample, ...]
    expires_at: Optional[float]  # None = sticky


class ResultCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, _CacheEntry] = {}
        self._generations: Dict[CacheKey, int] = {}

    def generation(self, key: CacheKey) -> int:
        """Number of evictions of key so far."""
        with self._lock:
            return self._generations.get(key, 0)

    def put(
        self,
        key: CacheKey,
        samples: Sequence[Sample],
        policy: CachePolicy,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store samples under key.

        Returns False if the policy disables caching, or if generation is
        given and key was evicted since it was read.
        """
        if not policy.enabled:
            return False
        expires_at = None if policy.sticky else self._clock() + policy.ttl
        with self._lock:
            if generation is not None and self._generations.get(key, 0) != generation:
                return False
            self._entries[key] = _CacheEntry(tuple(samples), expires_at)
        return True

    def get(self, key: CacheKey) -> Optional[List[Sample]]:
        """Cached samples for key, or None on a miss. Expired entries are removed."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is None or entry.expires_at >= self._clock():
                return list(entry.samples)
            del self._entries[key]
            return None

    def evict(self, key: CacheKey) -> bool:
        """Drop the entry and bump the generation, even when nothing is cached."""
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
