"""
In-process key/value store with per-entry expiry and a size bound.

Backs the rate limiter and the short-term context cache. Both are advisory
and safe to lose on restart; callers receive the store by injection so it
can be replaced by a shared cache service without touching call sites.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple


class BoundedTTLStore:
    """
    Dict-like store bounded to ``max_entries`` keys.

    When a new key arrives at a full store, expired entries are pruned
    first. If the store is still full, the oldest live write is evicted, or,
    with ``evict_live=False``, the new key is refused and set() returns
    False so existing entries keep their state.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        evict_live: bool = True,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.evict_live = evict_live
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return default
            value, expires_at = item
            if self._expired(expires_at, self._clock()):
                del self._data[key]
                return default
            return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> bool:
        ttl = self.ttl_seconds if ttl is None else ttl
        now = self._clock()
        expires_at = now + ttl if ttl is not None else None
        with self._lock:
            if key not in self._data and len(self._data) >= self.max_entries:
                self._prune_locked(now)
                if len(self._data) >= self.max_entries:
                    if not self.evict_live:
                        return False
                    self._data.popitem(last=False)
            self._data.pop(key, None)
            self._data[key] = (value, expires_at)
            return True

    def pop(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            item = self._data.pop(key, None)
        if item is None:
            return default
        value, expires_at = item
        if self._expired(expires_at, self._clock()):
            return default
        return value

    def prune_expired(self) -> int:
        """Drop expired entries, returning how many were removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        stale = [k for k, (_, expires_at) in self._data.items() if self._expired(expires_at, now)]
        for key in stale:
            del self._data[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def __len__(self) -> int:
        return len(self._data)
