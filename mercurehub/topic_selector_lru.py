"""Topic selector store backed by a sharded LRU cache."""

from __future__ import annotations

import threading
from typing import Any

from cachetools import LRUCache

from .topic_selector import TopicSelectorStore

DEFAULT_MAX_ENTRIES_PER_SHARD = 10_000
DEFAULT_SHARD_COUNT = 256


def _fnv1a_32(data: bytes) -> int:
    digest = 0x811C9DC5
    for byte in data:
        digest = ((digest ^ byte) * 0x01000193) & 0xFFFFFFFF
    return digest


class ShardedLRUCache:
    """LRU caches chosen per key by its FNV-1a hash."""

    def __init__(self, max_entries_per_shard: int, shard_count: int) -> None:
        if max_entries_per_shard <= 0 or shard_count <= 0:
            raise ValueError("shard size and count must be positive")
        self._shards = [LRUCache(maxsize=max_entries_per_shard) for _ in range(shard_count)]
        self._lock = threading.Lock()

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    def _shard(self, key: str) -> LRUCache:
        return self._shards[_fnv1a_32(key.encode()) % len(self._shards)]

    def get(self, key: str) -> tuple[Any, bool]:
        """Return the cached value and whether it was found."""
        with self._lock:
            shard = self._shard(key)
            if key in shard:
                return shard[key], True
            return None, False

    def set(self, key: str, value: Any, cost: int) -> bool:
        """Store a value; the cost is ignored."""
        with self._lock:
            self._shard(key)[key] = value
        return True

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)


def new_topic_selector_store_lru(max_entries_per_shard: int, shard_count: int) -> TopicSelectorStore:
    """Create a store with a sharded LRU cache; zero entries disables the cache."""
    if max_entries_per_shard == 0:
        return TopicSelectorStore()
    return TopicSelectorStore(
        cache=ShardedLRUCache(max_entries_per_shard, shard_count or DEFAULT_SHARD_COUNT),
        skip_select=True,
    )