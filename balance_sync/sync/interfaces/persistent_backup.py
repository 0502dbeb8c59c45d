from abc import ABC, abstractmethod
from typing import Optional

from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot


class PersistentBackup(ABC):
    """
    Interface for the durable last-known-good snapshot, one per user.
    Survives process restarts.
    """
    @abstractmethod
    def get(self, user_id: str) -> Optional[BalanceSnapshot]:
        pass

    @abstractmethod
    def put(self, user_id: str, snapshot: BalanceSnapshot) -> None:
        pass
