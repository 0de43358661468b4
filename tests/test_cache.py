from __future__ import annotations

from zotero_manager.cache import CacheManager


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_get_returns_value_before_expiry_and_evicts_at_expiry() -> None:
    clock = _Clock()
    cache = CacheManager(clock=clock)
    cache.set("search:a", [1, 2], 10)

    clock.now = 9.999
    assert cache.get("search:a") == [1, 2]

    clock.now = 10.0
    assert cache.get("search:a") is None
    assert "search:a" not in cache


def test_set_overwrites_and_restarts_ttl() -> None:
    clock = _Clock()
    cache = CacheManager(clock=clock)
    cache.set("k", "old", 10)
    clock.now = 8
    cache.set("k", "new", 10)
    clock.now = 15
    assert cache.get("k") == "new"


def test_falsy_values_are_cached() -> None:
    cache = CacheManager()
    cache.set("tags:all", [], 60)
    sentinel = object()
    assert cache.get("tags:all", sentinel) == []
    assert cache.get("missing", sentinel) is sentinel


def test_invalidate_by_prefix_counts_and_spares_other_keys() -> None:
    cache = CacheManager()
    cache.set("search:a", 1, 60)
    cache.set("search:b", 2, 60)
    cache.set("item:x", 3, 60)

    assert cache.invalidate_by_prefix("search:") == 2
    assert cache.get("item:x") == 3
    assert cache.stats() == {"size": 1, "keys": ["item:x"]}


def test_cleanup_sweeps_only_expired() -> None:
    clock = _Clock()
    cache = CacheManager(clock=clock)
    cache.set("short", 1, 5)
    cache.set("long", 2, 50)
    clock.now = 6
    assert cache.cleanup() == 1
    assert len(cache) == 1


def test_delete_and_clear() -> None:
    cache = CacheManager()
    cache.set("a", 1, 60)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.set("b", 2, 60)
    cache.clear()
    assert len(cache) == 0


def test_max_entries_evicts_oldest() -> None:
    clock = _Clock()
    cache = CacheManager(clock=clock, max_entries=10)
    for i in range(11):
        clock.now = i
        cache.set(f"k{i}", i, 100)
    assert "k0" not in cache
    assert "k10" in cache
    assert len(cache) == 10
