from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

from balance_sync.sync.domain.network import Network

KEY_PREFIX = "balance_sync"


class CacheCategory(Enum):
    USER_BALANCE = "user_balance"
    SYNC_STATUS = "sync_status"
    SYNC_HISTORY = "sync_history"
    NOTIFICATION_DEDUP = "notification_dedup"
    METADATA = "metadata"


def _scope(network: Network, user_id: str, address: str) -> str:
    return f"{network.value}:{user_id}:{address.lower()}"


def balance_key(user_id: str, network: Network, address: str) -> str:
    return f"{KEY_PREFIX}:cache:{_scope(network, user_id, address)}"


def status_key(user_id: str, network: Network, address: str) -> str:
    return f"{KEY_PREFIX}:status:{_scope(network, user_id, address)}"


def history_key(user_id: str, network: Network, address: str) -> str:
    return f"{KEY_PREFIX}:history:{_scope(network, user_id, address)}"


def notified_key(user_id: str, network: Network, token: str) -> str:
    return f"{KEY_PREFIX}:notified:{network.value}:{user_id}:{token}"


@dataclass(frozen=True)
class CacheTtlPolicy:
    """TTL in seconds for each cached data category."""
    ttl_by_category: Dict[CacheCategory, int] = field(
        default_factory=lambda: {
            CacheCategory.USER_BALANCE: 300,
            CacheCategory.SYNC_STATUS: 86400,
            CacheCategory.SYNC_HISTORY: 86400,
            CacheCategory.NOTIFICATION_DEDUP: 3600,
            CacheCategory.METADATA: 604800,
        }
    )

    def ttl_for(self, category: CacheCategory) -> int:
        ttl = self.ttl_by_category.get(category)
        if not ttl or ttl <= 0:
            raise ValueError(f"no TTL configured for {category.value}")
        return ttl

    @classmethod
    def from_settings(cls, settings) -> "CacheTtlPolicy":
        return cls(
            ttl_by_category={
                CacheCategory.USER_BALANCE: settings.BALANCE_CACHE_TTL_SECONDS,
                CacheCategory.SYNC_STATUS: settings.STATUS_CACHE_TTL_SECONDS,
                CacheCategory.SYNC_HISTORY: settings.STATUS_CACHE_TTL_SECONDS,
                CacheCategory.NOTIFICATION_DEDUP: settings.DEDUP_WINDOW_SECONDS,
                CacheCategory.METADATA: settings.METADATA_CACHE_TTL_SECONDS,
            }
        )
