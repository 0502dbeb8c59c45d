import logging
from collections import deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Deque, Dict, Optional, Tuple

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.change_event import ChangeEvent
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.domain.network import Network
from balance_sync.sync.interfaces.notification_deduplicator import NotificationDeduplicator
from balance_sync.sync.interfaces.shared_cache import SharedCache
from balance_sync.sync.store.cache_keys import notified_key

logger = logging.getLogger(__name__)


class InMemoryNotificationDeduplicator(NotificationDeduplicator):
    """
    Per-token ring of recently emitted signatures.
    A bucket untouched for longer than the window is dropped on lookup.
    """

    def __init__(
        self,
        window_seconds: int = 3600,
        max_signatures: int = 50,
        time_source: Optional[TimeSource] = None,
    ):
        self.window = timedelta(seconds=window_seconds)
        self.max_signatures = max_signatures
        self.time_source = time_source or SystemTimeSource()
        self._buckets: Dict[str, Tuple[Deque[str], datetime]] = {}
        self._lock = Lock()

    def should_emit(self, event: ChangeEvent) -> bool:
        with self._lock:
            bucket = self._live_bucket(event.token)
            if bucket is None:
                return True
            return event.signature not in bucket[0]

    def mark_emitted(self, event: ChangeEvent) -> None:
        with self._lock:
            bucket = self._live_bucket(event.token)
            signatures = bucket[0] if bucket is not None else deque(maxlen=self.max_signatures)
            signatures.append(event.signature)
            self._buckets[event.token] = (signatures, self.time_source.now())

    def _live_bucket(self, token: str) -> Optional[Tuple[Deque[str], datetime]]:
        bucket = self._buckets.get(token)
        if bucket is None:
            return None
        if self.time_source.now() - bucket[1] > self.window:
            del self._buckets[token]
            return None
        return bucket


class SharedCacheNotificationDeduplicator(NotificationDeduplicator):
    """
    Same bucket rules, stored in the shared cache so every session of the
    user sees the same history. Cache failures fail open.
    """

    def __init__(
        self,
        cache: SharedCache,
        user_id: str,
        network: Network,
        window_seconds: int = 3600,
        max_signatures: int = 50,
        time_source: Optional[TimeSource] = None,
    ):
        self.cache = cache
        self.user_id = user_id
        self.network = network
        self.window_seconds = window_seconds
        self.max_signatures = max_signatures
        self.time_source = time_source or SystemTimeSource()

    def should_emit(self, event: ChangeEvent) -> bool:
        try:
            signatures = self._load(event.token)
        except CacheError as e:
            logger.warning(f"Dedup lookup failed for {self.user_id}/{event.token}: {e}")
            return True
        return event.signature not in signatures

    def mark_emitted(self, event: ChangeEvent) -> None:
        try:
            signatures = self._load(event.token)
            signatures.append(event.signature)
            self.cache.set(
                notified_key(self.user_id, self.network, event.token),
                {
                    "signatures": signatures[-self.max_signatures:],
                    "last_touched_at": self.time_source.now().isoformat(),
                },
                self.window_seconds,
            )
        except CacheError as e:
            logger.warning(f"Dedup write failed for {self.user_id}/{event.token}: {e}")

    def _load(self, token: str) -> list:
        entry = self.cache.get(notified_key(self.user_id, self.network, token))
        if entry is None or not isinstance(entry.payload, dict):
            return []
        try:
            touched = datetime.fromisoformat(entry.payload["last_touched_at"])
        except (KeyError, TypeError, ValueError):
            return []
        if (self.time_source.now() - touched).total_seconds() > self.window_seconds:
            return []
        return list(entry.payload.get("signatures") or [])
