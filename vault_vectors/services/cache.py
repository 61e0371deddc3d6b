"""Bounded LRU cache of retrieved entries"""

import threading
from collections import OrderedDict

from vault_vectors.models.embedding import EmbeddingEntry
from vault_vectors.models.metrics import CacheStats


class EntryCache:
    """
    LRU cache keyed by entry id

    Guarded by its own lock, independent of the storage state lock, so a
    lookup never waits on a long-running compaction. Entries are copied on
    the way in and out so callers cannot mutate cached state.
    """

    def __init__(self, max_entries: int = 1024):
        self._cache: OrderedDict[str, EmbeddingEntry] = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, entry_id: str) -> EmbeddingEntry | None:
        """Get an entry, updating LRU order"""
        with self._lock:
            entry = self._cache.get(entry_id)
            if entry is None:
                self._misses += 1
                return None
            self._cache.move_to_end(entry_id)
            self._hits += 1
            return entry.model_copy(deep=True)

    def put(self, entry: EmbeddingEntry) -> None:
        """Add an entry, evicting the least recently used if full"""
        if self._max_entries <= 0:
            return
        with self._lock:
            self._cache[entry.id] = entry.model_copy(deep=True)
            self._cache.move_to_end(entry.id)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)

    def remove(self, entry_id: str) -> None:
        with self._lock:
            self._cache.pop(entry_id, None)

    def remove_many(self, entry_ids) -> None:
        with self._lock:
            for entry_id in entry_ids:
                self._cache.pop(entry_id, None)

    def clear(self) -> None:
        """Drop every entry; hit and miss counters are kept"""
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, entry_id: object) -> bool:
        with self._lock:
            return entry_id in self._cache

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._cache),
                capacity=self._max_entries,
            )
