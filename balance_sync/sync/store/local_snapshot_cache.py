from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Dict, Optional, Tuple

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.network import Network


@dataclass(frozen=True)
class LocalCacheHit:
    snapshot: BalanceSnapshot
    stored_at: datetime
    age_seconds: float


class LocalSnapshotCache:
    """
    Last snapshot seen by this process, per (user, network).
    Owned by one resolver; the lock only covers scheduler/worker threads.
    """

    def __init__(self, time_source: Optional[TimeSource] = None):
        self.time_source = time_source or SystemTimeSource()
        self._entries: Dict[Tuple[str, Network], Tuple[BalanceSnapshot, datetime]] = {}
        self._lock = Lock()

    def put(self, snapshot: BalanceSnapshot) -> None:
        key = (snapshot.user_id, snapshot.network)
        with self._lock:
            self._entries[key] = (snapshot, self.time_source.now())

    def get(self, user_id: str, network: Network) -> Optional[LocalCacheHit]:
        with self._lock:
            item = self._entries.get((user_id, network))
        if item is None:
            return None
        snapshot, stored_at = item
        return LocalCacheHit(
            snapshot=snapshot,
            stored_at=stored_at,
            age_seconds=self.time_source.seconds_since(stored_at),
        )

    def clear(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
                return
            for key in [k for k in self._entries if k[0] == user_id]:
                del self._entries[key]
