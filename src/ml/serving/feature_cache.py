"""
Feature Cache for online model serving.

Keeps previously computed item feature vectors in memory so the serving path
only pays for feature extraction once per item. The cache is split into
independently locked stripes; an item always lives in the stripe picked by its
hash, so lookups for unrelated items rarely wait on each other. Each stripe is
an LRU list with its own share of the entry and byte budget.
"""

import logging
import math
import threading
from collections import OrderedDict
from typing import Any, Dict, Generic, Hashable, Optional, TypeVar

import numpy as np
from prometheus_client import Counter

FEATURE_CACHE_HITS = Counter('feature_cache_hits_total', 'Feature cache hits', ['cache'])
FEATURE_CACHE_MISSES = Counter('feature_cache_misses_total', 'Feature cache misses', ['cache'])
FEATURE_CACHE_EVICTIONS = Counter('feature_cache_evictions_total', 'Feature cache evictions', ['cache'])

DEFAULT_MAX_ENTRIES = 100_000
DEFAULT_NUM_STRIPES = 16

T = TypeVar("T", bound=Hashable)


class _CacheStripe:
    """One LRU segment of the feature cache"""

    def __init__(self, max_entries: int, max_bytes: Optional[int]):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.entries: "OrderedDict[Any, np.ndarray]" = OrderedDict()
        self.size_bytes = 0
        self.lock = threading.RLock()

    def over_budget(self) -> bool:
        if len(self.entries) > self.max_entries:
            return True
        return self.max_bytes is not None and self.size_bytes > self.max_bytes


class FeatureCache(Generic[T]):
    """Thread-safe, striped LRU cache from item to feature vector"""

    def __init__(self,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 max_bytes: Optional[int] = None,
                 num_stripes: int = DEFAULT_NUM_STRIPES,
                 name: str = "default"):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if num_stripes < 1:
            raise ValueError("num_stripes must be at least 1")
        if max_bytes is not None and max_bytes < 1:
            raise ValueError("max_bytes must be positive")

        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.num_stripes = min(num_stripes, max_entries)
        self.name = name
        self.logger = logging.getLogger(__name__)

        stripe_entries = math.ceil(max_entries / self.num_stripes)
        stripe_bytes = math.ceil(max_bytes / self.num_stripes) if max_bytes is not None else None
        self._stripes = [_CacheStripe(stripe_entries, stripe_bytes) for _ in range(self.num_stripes)]

        self._hits = FEATURE_CACHE_HITS.labels(cache=name)
        self._misses = FEATURE_CACHE_MISSES.labels(cache=name)
        self._evictions = FEATURE_CACHE_EVICTIONS.labels(cache=name)

        # Local counters for get_stats; prometheus counters are process-wide
        self._stats_lock = threading.Lock()
        self._hit_count = 0
        self._miss_count = 0
        self._eviction_count = 0

    def _stripe_for(self, item: T) -> _CacheStripe:
        return self._stripes[hash(item) % self.num_stripes]

    def get_item(self, item: T) -> Optional[np.ndarray]:
        """Return the cached vector for item, or None. The returned array is read-only."""
        stripe = self._stripe_for(item)
        with stripe.lock:
            vector = stripe.entries.get(item)
            if vector is not None:
                stripe.entries.move_to_end(item)

        if vector is None:
            self._misses.inc()
            with self._stats_lock:
                self._miss_count += 1
            return None

        self._hits.inc()
        with self._stats_lock:
            self._hit_count += 1
        return vector

    def add_item(self, item: T, vector: np.ndarray) -> None:
        """Insert or refresh item, evicting least recently used entries when over budget"""
        frozen = np.array(vector, dtype=np.float64, copy=True)
        frozen.setflags(write=False)

        stripe = self._stripe_for(item)
        evicted = 0
        with stripe.lock:
            previous = stripe.entries.pop(item, None)
            if previous is not None:
                stripe.size_bytes -= previous.nbytes

            stripe.entries[item] = frozen
            stripe.size_bytes += frozen.nbytes

            # The newest entry is never evicted, even when it alone exceeds the byte budget
            while len(stripe.entries) > 1 and stripe.over_budget():
                _, oldest = stripe.entries.popitem(last=False)
                stripe.size_bytes -= oldest.nbytes
                evicted += 1

        if evicted:
            self._evictions.inc(evicted)
            with self._stats_lock:
                self._eviction_count += evicted
            self.logger.debug(f"Evicted {evicted} feature vectors from cache '{self.name}'")

    def remove_item(self, item: T) -> bool:
        stripe = self._stripe_for(item)
        with stripe.lock:
            previous = stripe.entries.pop(item, None)
            if previous is None:
                return False
            stripe.size_bytes -= previous.nbytes
            return True

    def clear(self) -> None:
        for stripe in self._stripes:
            with stripe.lock:
                stripe.entries.clear()
                stripe.size_bytes = 0

    def __contains__(self, item: T) -> bool:
        stripe = self._stripe_for(item)
        with stripe.lock:
            return item in stripe.entries

    def __len__(self) -> int:
        total = 0
        for stripe in self._stripes:
            with stripe.lock:
                total += len(stripe.entries)
        return total

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        entries = 0
        size_bytes = 0
        for stripe in self._stripes:
            with stripe.lock:
                entries += len(stripe.entries)
                size_bytes += stripe.size_bytes

        with self._stats_lock:
            hits, misses, evictions = self._hit_count, self._miss_count, self._eviction_count

        total = hits + misses
        return {
            'name': self.name,
            'entries': entries,
            'size_bytes': size_bytes,
            'max_entries': self.max_entries,
            'max_bytes': self.max_bytes,
            'num_stripes': self.num_stripes,
            'hits': hits,
            'misses': misses,
            'evictions': evictions,
            'hit_rate': hits / total if total else 0.0
        }
