"""
Small bounded containers used by the crawler state and the rate limiter.

All of them evict oldest-first, so a snapshot taken in iteration order
lists the oldest entries first and the newest last.
"""

from collections import deque
from typing import (
    Callable,
    Deque,
    Dict,
    Generic,
    Hashable,
    Iterable,
    Iterator,
    List,
    Optional,
    TypeVar,
)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
T = TypeVar("T", bound=Hashable)


class BoundedSet(Generic[T]):
    """
    Insertion-ordered set with a hard size cap.

    Re-adding an existing member does not refresh its position. When an
    insertion would exceed the cap the oldest members are evicted.
    """

    def __init__(self, maxlen: int, items: Optional[Iterable[T]] = None):
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self.maxlen = maxlen
        self._items: Dict[T, None] = {}
        if items is not None:
            self.update(items)

    def add(self, item: T) -> None:
        if item in self._items:
            return
        self._items[item] = None
        self._evict()

    def update(self, items: Iterable[T]) -> None:
        for item in items:
            self._items.setdefault(item, None)
        self._evict()

    def discard(self, item: T) -> None:
        self._items.pop(item, None)

    def clear(self) -> None:
        self._items.clear()

    def evict_oldest(self, count: int) -> List[T]:
        """Remove up to `count` of the oldest members and return them."""
        removed: List[T] = []
        for item in list(self._items)[:max(0, count)]:
            del self._items[item]
            removed.append(item)
        return removed

    def newest(self, count: int) -> List[T]:
        """The `count` most recently added members, oldest first."""
        if count <= 0:
            return []
        return list(self._items)[-count:]

    def _evict(self) -> None:
        overflow = len(self._items) - self.maxlen
        if overflow > 0:
            self.evict_oldest(overflow)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"BoundedSet(maxlen={self.maxlen}, size={len(self)})"


def bounded_deque(maxlen: int, items: Optional[Iterable[V]] = None) -> Deque[V]:
    """FIFO history that drops its oldest entry on overflow."""
    return deque(items or (), maxlen=maxlen)


class KeyedTable(Generic[K, V]):
    """Mapping with an explicit get-or-insert-default operation."""

    def __init__(self, default_factory: Callable[[], V]):
        self._default_factory = default_factory
        self._entries: Dict[K, V] = {}

    def get_or_insert_default(self, key: K) -> V:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._default_factory()
            self._entries[key] = entry
        return entry

    def get(self, key: K) -> Optional[V]:
        return self._entries.get(key)

    def items(self) -> List:
        return list(self._entries.items())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class DedupCache:
    """
    Recency-bounded set of match IDs already ingested (or already checked
    against the durable store). Shared by every region task; inserts are
    idempotent so concurrent duplicates are harmless.
    """

    def __init__(self, maxlen: int, ids: Optional[Iterable[str]] = None):
        self._ids: BoundedSet[str] = BoundedSet(maxlen, ids)

    def filter_unknown(self, match_ids: Iterable[str]) -> List[str]:
        """Return the IDs not in the cache, preserving order."""
        return [match_id for match_id in match_ids if match_id not in self._ids]

    def add(self, match_id: str) -> None:
        self._ids.add(match_id)

    def add_many(self, match_ids: Iterable[str]) -> None:
        self._ids.update(match_ids)

    def discard_many(self, match_ids: Iterable[str]) -> None:
        for match_id in match_ids:
            self._ids.discard(match_id)

    def snapshot(self) -> List[str]:
        return list(self._ids)

    @property
    def maxlen(self) -> int:
        return self._ids.maxlen

    def __contains__(self, match_id: object) -> bool:
        return match_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
