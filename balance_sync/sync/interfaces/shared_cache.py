from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    cached_at: datetime
    ttl_seconds: int


class SharedCache(ABC):
    """
    Interface for the TTL key/value store shared by every session of a user.
    Implementations raise CacheError on I/O failure.
    """
    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Every write carries a positive TTL; a missing one is a ValueError."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass
