import copy
from datetime import timedelta
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.interfaces.shared_cache import CacheEntry, SharedCache


class InMemorySharedCache(SharedCache):
    """
    Process-local stand-in for the shared cache.
    Expired entries are dropped on read.
    """

    def __init__(self, time_source: Optional[TimeSource] = None):
        self.time_source = time_source or SystemTimeSource()
        self._entries: Dict[str, Tuple[CacheEntry, Any]] = {}
        self._lock = Lock()
        self.writes = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        now = self.time_source.now()
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            entry, expires_at = item
            if now >= expires_at:
                del self._entries[key]
                return None
            return CacheEntry(
                payload=copy.deepcopy(entry.payload),
                cached_at=entry.cached_at,
                ttl_seconds=entry.ttl_seconds,
            )

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not ttl_seconds or ttl_seconds <= 0:
            raise ValueError(f"refusing to write {key} without a TTL")
        now = self.time_source.now()
        entry = CacheEntry(payload=copy.deepcopy(value), cached_at=now, ttl_seconds=int(ttl_seconds))
        with self._lock:
            self._entries[key] = (entry, now + timedelta(seconds=ttl_seconds))
            self.writes += 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def keys(self) -> list:
        with self._lock:
            return list(self._entries.keys())
