"""Topic selector store backed by a cost-bounded, frequency-aware cache."""

from __future__ import annotations

import threading
from typing import Any

from cachetools import LFUCache

from .topic_selector import TopicSelectorStore

DEFAULT_CACHE_NUM_COUNTERS = 60_000_000
DEFAULT_CACHE_MAX_COST = 100_000_000  # 100 MB


class CostBoundedCache:
    """A cache whose total entry cost stays within max_cost, tracking at most num_counters keys."""

    def __init__(self, num_counters: int, max_cost: int) -> None:
        if num_counters <= 0 or max_cost <= 0:
            raise ValueError("num_counters and max_cost must be positive")
        self.num_counters = num_counters
        self.max_cost = max_cost
        self._cache: LFUCache = LFUCache(maxsize=max_cost, getsizeof=lambda entry: entry[1])
        self._lock = threading.Lock()

    def get(self, key: str) -> tuple[Any, bool]:
        """Return the cached value and whether it was found."""
        with self._lock:
            entry = self._cache.get(key)
        return (None, False) if entry is None else (entry[0], True)

    def set(self, key: str, value: Any, cost: int) -> bool:
        """Store a value with its cost; return False if it cannot be admitted."""
        if not 0 <= cost <= self.max_cost:
            return False
        with self._lock:
            if key not in self._cache:
                while len(self._cache) >= self.num_counters:
                    self._cache.popitem()
            self._cache[key] = (value, cost)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


def new_topic_selector_store_cost(cache_num_counters: int, cache_max_cost: int) -> TopicSelectorStore:
    """Create a store with a cost-bounded cache; zero counters disables the cache."""
    if cache_num_counters == 0:
        return TopicSelectorStore()
    try:
        cache = CostBoundedCache(cache_num_counters, cache_max_cost)
    except ValueError as exc:
        raise ValueError(f"unable to create cache: {exc}") from exc
    return TopicSelectorStore(cache=cache)