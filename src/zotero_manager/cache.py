"""In-memory TTL cache with prefix invalidation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    stored_at: float


class CacheManager:
    """Key/value store whose entries expire ``ttl`` seconds after ``set``.

    Expired entries are evicted lazily on ``get`` (and by ``cleanup``), so a
    stale value is never returned. Keys are hierarchical strings such as
    ``search:...`` or ``item:<key>:...`` so a whole category can be dropped
    with :meth:`invalidate_by_prefix`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = 0) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock
        self.max_entries = max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return default
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        now = self._clock()
        # Re-insert so the dict order tracks store time
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, expires_at=now + ttl_seconds, stored_at=now)
        if self.max_entries > 0 and len(self._entries) > self.max_entries:
            # drop oldest ~10% to keep simple
            n_drop = max(1, self.max_entries // 10)
            for old_key in list(self._entries)[:n_drop]:
                del self._entries[old_key]
            logger.debug(f"cache over {self.max_entries} entries, evicted {n_drop} oldest")

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_by_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Evict every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        return {"size": len(self._entries), "keys": list(self._entries)}
