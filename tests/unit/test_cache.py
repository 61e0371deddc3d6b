"""Unit tests for the entry LRU cache"""

from vault_vectors.models.embedding import EmbeddingEntry
from vault_vectors.services.cache import EntryCache


def make_entry(i: int) -> EmbeddingEntry:
    return EmbeddingEntry.create(
        vector=[float(i), 1.0],
        file_path="note.md",
        chunk_id=f"chunk_{i:04d}",
        text=f"text {i}",
        model_name="m1",
    )


def test_get_put_and_stats():
    """Test hits and misses are counted"""
    cache = EntryCache(max_entries=4)
    entry = make_entry(1)

    assert cache.get(entry.id) is None
    cache.put(entry)

    assert cache.get(entry.id) == entry
    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.size == 1
    assert stats.capacity == 4
    assert stats.hit_rate == 0.5


def test_least_recently_used_is_evicted():
    """Test LRU eviction order"""
    cache = EntryCache(max_entries=2)
    first, second, third = make_entry(1), make_entry(2), make_entry(3)
    cache.put(first)
    cache.put(second)
    cache.get(first.id)

    cache.put(third)

    assert first.id in cache
    assert second.id not in cache
    assert third.id in cache


def test_cached_entries_are_copies():
    """Test that mutating a returned entry does not change the cache"""
    cache = EntryCache(max_entries=2)
    entry = make_entry(1)
    cache.put(entry)

    returned = cache.get(entry.id)
    returned.vector[0] = 99.0
    entry.vector[1] = 42.0

    assert cache.get(entry.id).vector == [1.0, 1.0]


def test_zero_capacity_disables_cache():
    """Test that max_entries=0 stores nothing"""
    cache = EntryCache(max_entries=0)
    cache.put(make_entry(1))

    assert len(cache) == 0


def test_remove_and_clear():
    """Test explicit invalidation"""
    cache = EntryCache(max_entries=4)
    entries = [make_entry(i) for i in range(3)]
    for entry in entries:
        cache.put(entry)

    cache.remove(entries[0].id)
    assert len(cache) == 2
    cache.remove_many([entries[1].id, "unknown"])
    assert len(cache) == 1
    cache.clear()
    assert len(cache) == 0
