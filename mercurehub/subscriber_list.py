"""An ordered collection of subscribers with cached topic matching."""

from __future__ import annotations

import threading
from collections.abc import Callable

from cachetools import LRUCache

from .subscriber import Subscriber
from .update import Update


class SubscriberList:
    """Subscribers in insertion order, each with an increasing numeric ID."""

    def __init__(self, size: int = 100_000) -> None:
        self._entries: dict[int, Subscriber] = {}
        self._ids: dict[Subscriber, int] = {}
        self._next_id = 0
        self._cache: LRUCache = LRUCache(maxsize=size)
        self._lock = threading.Lock()

    def _lookup(self, scoped_topic: str) -> frozenset[int]:
        # The caller holds self._lock.
        matched = self._cache.get(scoped_topic)
        if matched is None:
            scope, _, topic = scoped_topic.partition("_")
            matched = frozenset(
                ident for ident, s in self._entries.items() if s.match_topic(topic, scope == "p")
            )
            self._cache[scoped_topic] = matched
        return matched

    def match_any(self, update: Update) -> list[Subscriber]:
        """Return the subscribers matching any topic of the update, in insertion order."""
        prefix = "p_" if update.private else "_"
        with self._lock:
            matched: set[int] = set()
            for topic in update.topics:
                matched |= self._lookup(prefix + topic)
            return [self._entries[ident] for ident in sorted(matched)]

    def walk(self, start: int, callback: Callable[[Subscriber], bool]) -> int:
        """Call back each subscriber with an ID of at least start until it returns False.

        Returns the ID after the last subscriber visited, or start if none was.
        """
        with self._lock:
            items = [(ident, s) for ident, s in self._entries.items() if ident >= start]
        position = start
        for ident, subscriber in items:
            position = ident + 1
            if not callback(subscriber):
                break
        return position

    def add(self, subscriber: Subscriber) -> None:
        """Add a subscriber; adding one already present does nothing."""
        with self._lock:
            if subscriber in self._ids:
                return
            self._entries[self._next_id] = subscriber
            self._ids[subscriber] = self._next_id
            self._next_id += 1
            self._cache.clear()

    def remove(self, subscriber: Subscriber) -> None:
        """Remove a subscriber if it is present."""
        with self._lock:
            ident = self._ids.pop(subscriber, None)
            if ident is not None:
                del self._entries[ident]
                self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)