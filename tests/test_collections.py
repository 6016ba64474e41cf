import pytest

from collections_util import BoundedSet, DedupCache, KeyedTable, bounded_deque


def test_bounded_set_evicts_oldest():
    items = BoundedSet(3, ["a", "b", "c"])
    items.add("d")
    assert list(items) == ["b", "c", "d"]
    assert "a" not in items


def test_bounded_set_readd_keeps_position():
    items = BoundedSet(3, ["a", "b"])
    items.add("a")
    items.add("c")
    items.add("d")
    assert list(items) == ["b", "c", "d"]


def test_bounded_set_evict_and_newest():
    items = BoundedSet(10, ["a", "b", "c", "d"])
    assert items.newest(2) == ["c", "d"]
    assert items.evict_oldest(3) == ["a", "b", "c"]
    assert list(items) == ["d"]
    assert items.evict_oldest(5) == ["d"]
    assert len(items) == 0


def test_bounded_set_rejects_non_positive_cap():
    with pytest.raises(ValueError):
        BoundedSet(0)


def test_bounded_deque_drops_oldest():
    history = bounded_deque(2, ["a", "b"])
    history.append("c")
    assert list(history) == ["b", "c"]


def test_keyed_table_inserts_default_once():
    table = KeyedTable(list)
    first = table.get_or_insert_default("europe")
    first.append(1)
    assert table.get_or_insert_default("europe") == [1]
    assert table.get("asia") is None
    assert "europe" in table and len(table) == 1


def test_dedup_cache_filters_in_order():
    cache = DedupCache(5, ["b"])
    assert cache.filter_unknown(["a", "b", "c"]) == ["a", "c"]
    cache.add_many(["a", "c"])
    cache.discard_many(["b"])
    assert cache.snapshot() == ["a", "c"]


def test_dedup_cache_is_bounded():
    cache = DedupCache(3)
    cache.add_many(str(i) for i in range(10))
    assert cache.snapshot() == ["7", "8", "9"]
    assert cache.maxlen == 3
