import json
import logging
from datetime import datetime
from typing import Any, Optional

import redis

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.interfaces.shared_cache import CacheEntry, SharedCache

logger = logging.getLogger(__name__)


class RedisSharedCache(SharedCache):
    """
    Shared cache on Redis. Values are stored as a JSON envelope carrying
    the write time, and Redis enforces the TTL.
    """

    def __init__(self, client: "redis.Redis", time_source: Optional[TimeSource] = None):
        self.client = client
        self.time_source = time_source or SystemTimeSource()

    @classmethod
    def from_url(
        cls,
        url: str,
        timeout_seconds: float = 3.0,
        time_source: Optional[TimeSource] = None,
    ) -> "RedisSharedCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client, time_source=time_source)

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise CacheError(f"redis GET {key} failed: {e}") from e
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
            return CacheEntry(
                payload=envelope["payload"],
                cached_at=datetime.fromisoformat(envelope["cached_at"]),
                ttl_seconds=int(envelope["ttl_seconds"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            raise CacheError(f"corrupt cache entry {key}") from e

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not ttl_seconds or ttl_seconds <= 0:
            raise ValueError(f"refusing to write {key} without a TTL")
        envelope = {
            "payload": value,
            "cached_at": self.time_source.now().isoformat(),
            "ttl_seconds": int(ttl_seconds),
        }
        try:
            self.client.set(key, json.dumps(envelope, default=str), ex=int(ttl_seconds))
        except redis.RedisError as e:
            raise CacheError(f"redis SET {key} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise CacheError(f"redis DEL {key} failed: {e}") from e
