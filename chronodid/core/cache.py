"""chronodid.core.cache

Bounded in-memory memo with optional TTL.

Finalized ledger facts never change, so most entries live until evicted.
The TTL is for the few facts that do move (the chain head).
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any


class MemoCache:
    """Thread-safe LRU cache. ``default_ttl_s=None`` means entries never expire."""

    def __init__(self, max_entries: int = 4096, default_ttl_s: float | None = None):
        self._max_entries = max(1, int(max_entries))
        self._default_ttl_s = default_ttl_s
        self._store: OrderedDict[Hashable, tuple[float | None, Any]] = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def get(self, key: Hashable) -> Any | None:
        now = time.monotonic()
        with self._lock:
            item = self._store.get(key)
            if item is None:
                self.misses += 1
                return None
            expires_at, value = item
            if expires_at is not None and now >= expires_at:
                self._store.pop(key, None)
                self.misses += 1
                return None
            self._store.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any, *, ttl_s: float | None = None) -> None:
        ttl = self._default_ttl_s if ttl_s is None else float(ttl_s)
        expires_at = None if ttl is None else time.monotonic() + ttl
        with self._lock:
            self._store[key] = (expires_at, value)
            self._store.move_to_end(key)
            while len(self._store) > self._max_entries:
                self._store.popitem(last=False)

    def get_or_set(self, key: Hashable, factory: Callable[[], Any], *, ttl_s: float | None = None) -> Any:
        val = self.get(key)
        if val is not None:
            return val
        val = factory()
        self.set(key, val, ttl_s=ttl_s)
        return val

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key matching ``predicate``. Returns the number dropped."""

        with self._lock:
            doomed = [k for k in self._store if predicate(k)]
            for k in doomed:
                del self._store[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
