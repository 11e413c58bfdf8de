from __future__ import annotations

import time
from typing import Callable, Generic, Iterator, TypeVar


K = TypeVar("K")
V = TypeVar("V")


class ExpiringMap(Generic[K, V]):
    """Key -> value map where each entry carries its own deadline.

    Expired entries are dropped lazily on access and by `purge()`.
    """

    def __init__(self, default_ttl: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._items: dict[K, tuple[V, float | None]] = {}

    def set(self, key: K, value: V, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        deadline = None if ttl is None else self._clock() + max(0.0, float(ttl))
        self._items[key] = (value, deadline)

    def _live(self, key: K) -> tuple[V, float | None] | None:
        entry = self._items.get(key)
        if entry is None:
            return None
        _value, deadline = entry
        if deadline is not None and deadline <= self._clock():
            del self._items[key]
            return None
        return entry

    def get(self, key: K, default: V | None = None) -> V | None:
        entry = self._live(key)
        return default if entry is None else entry[0]

    def pop(self, key: K, default: V | None = None) -> V | None:
        entry = self._live(key)
        if entry is None:
            return default
        del self._items[key]
        return entry[0]

    def remaining(self, key: K) -> float | None:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0.0, entry[1] - self._clock())

    def purge(self) -> int:
        now = self._clock()
        expired = [k for k, (_v, deadline) in self._items.items() if deadline is not None and deadline <= now]
        for k in expired:
            del self._items[k]
        return len(expired)

    def keys(self) -> list[K]:
        self.purge()
        return list(self._items.keys())

    def __contains__(self, key: object) -> bool:
        return self._live(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        self.purge()
        return len(self._items)

    def __iter__(self) -> Iterator[K]:
        return iter(self.keys())
