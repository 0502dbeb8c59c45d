from threading import Lock
from typing import Dict, Optional

from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.interfaces.persistent_backup import PersistentBackup


class InMemoryBackupStore(PersistentBackup):
    """
    Simple in-memory implementation for testing and development.
    Not suitable for persistence across process restarts.
    """
    def __init__(self):
        self._store: Dict[str, BalanceSnapshot] = {}
        self._lock = Lock()

    def get(self, user_id: str) -> Optional[BalanceSnapshot]:
        with self._lock:
            return self._store.get(user_id)

    def put(self, user_id: str, snapshot: BalanceSnapshot) -> None:
        with self._lock:
            self._store[user_id] = snapshot
