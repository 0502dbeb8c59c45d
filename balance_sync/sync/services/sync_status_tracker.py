import logging
from typing import Any, Dict, List, Optional

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.domain.network import Network
from balance_sync.sync.interfaces.shared_cache import SharedCache
from balance_sync.sync.store.cache_keys import (
    CacheCategory,
    CacheTtlPolicy,
    balance_key,
    history_key,
    status_key,
)

logger = logging.getLogger(__name__)


class SyncStatusTracker:
    """
    Per-wallet sync status and a bounded change history in the shared cache.
    Every I/O error degrades to an empty answer.
    """

    def __init__(
        self,
        cache: SharedCache,
        ttl_policy: Optional[CacheTtlPolicy] = None,
        max_history: int = 100,
        time_source: Optional[TimeSource] = None,
    ):
        self.cache = cache
        self.ttl_policy = ttl_policy or CacheTtlPolicy()
        self.max_history = max_history
        self.time_source = time_source or SystemTimeSource()

    def record_sync(self, user_id: str, address: str, snapshot: BalanceSnapshot, source: str) -> None:
        now = self.time_source.now().isoformat()
        network = snapshot.network
        status = {
            "last_sync": now,
            "source": source,
            "status": "synced",
            "balance_count": len(snapshot.balances_table),
        }
        entry = {
            "timestamp": now,
            "source": source,
            "balances": dict(snapshot.balances_table),
            "action": "update",
        }
        try:
            self.cache.set(
                status_key(user_id, network, address),
                status,
                self.ttl_policy.ttl_for(CacheCategory.SYNC_STATUS),
            )
            history = self._read_history(user_id, network, address)
            history.insert(0, entry)
            self.cache.set(
                history_key(user_id, network, address),
                history[: self.max_history],
                self.ttl_policy.ttl_for(CacheCategory.SYNC_HISTORY),
            )
        except CacheError as e:
            logger.error(f"Failed to record sync status for {user_id}/{network.value}: {e}")

    def get_status(self, user_id: str, network: Network, address: str) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "last_sync": None,
            "source": None,
            "status": "unknown",
            "balance_count": 0,
        }
        try:
            stored = self.cache.get(status_key(user_id, network, address))
            cached = self.cache.get(balance_key(user_id, network, address))
        except CacheError as e:
            logger.error(f"Failed to read sync status for {user_id}/{network.value}: {e}")
            status.update({"has_cache": False, "cache_timestamp": None})
            return status

        if stored is not None:
            status.update(stored.payload)
        status["has_cache"] = cached is not None
        status["cache_timestamp"] = cached.cached_at.isoformat() if cached is not None else None
        return status

    def get_history(self, user_id: str, network: Network, address: str, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            return self._read_history(user_id, network, address)[:limit]
        except CacheError as e:
            logger.error(f"Failed to read sync history for {user_id}/{network.value}: {e}")
            return []

    def clear(self, user_id: str, network: Network, address: str) -> bool:
        try:
            for key in (
                balance_key(user_id, network, address),
                status_key(user_id, network, address),
                history_key(user_id, network, address),
            ):
                self.cache.delete(key)
        except CacheError as e:
            logger.error(f"Failed to clear sync cache for {user_id}/{network.value}: {e}")
            return False
        return True

    def _read_history(self, user_id: str, network: Network, address: str) -> List[Dict[str, Any]]:
        entry = self.cache.get(history_key(user_id, network, address))
        if entry is None or not isinstance(entry.payload, list):
            return []
        return list(entry.payload)
