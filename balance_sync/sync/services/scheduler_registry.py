import threading
from typing import Callable, Dict, Optional

from balance_sync.sync.domain.cycle_report import CycleReport
from balance_sync.sync.domain.identity import Identity
from balance_sync.sync.domain.network import Network
from balance_sync.sync.services.sync_scheduler import SchedulerState, SyncScheduler


class SchedulerRegistry:
    """
    Keeps exactly one scheduler per (user, network) pair.
    """

    def __init__(self, factory: Callable[[Identity], SyncScheduler]):
        self.factory = factory
        self._schedulers: Dict[str, SyncScheduler] = {}
        self._lock = threading.Lock()

    def ensure_started(self, identity: Identity) -> Optional[CycleReport]:
        with self._lock:
            scheduler = self._schedulers.get(identity.pair_key)
            if scheduler is None:
                scheduler = self.factory(identity)
                self._schedulers[identity.pair_key] = scheduler
        if scheduler.state is SchedulerState.RUNNING:
            return scheduler.last_report
        return scheduler.start(identity)

    def get(self, user_id: str, network: Network) -> Optional[SyncScheduler]:
        with self._lock:
            return self._schedulers.get(f"{user_id}:{network.value}")

    def stop(self, user_id: str, network: Network) -> bool:
        scheduler = self.get(user_id, network)
        if scheduler is None:
            return False
        scheduler.stop()
        return True

    def revoke_user(self, user_id: str) -> int:
        """Session ended: stop every scheduler the user owns."""
        with self._lock:
            owned = [s for s in self._schedulers.values() if s.identity is not None and s.identity.user_id == user_id]
        for scheduler in owned:
            scheduler.on_session_revoked()
        return len(owned)

    def stop_all(self) -> None:
        with self._lock:
            schedulers = list(self._schedulers.values())
            self._schedulers.clear()
        for scheduler in schedulers:
            scheduler.shutdown()

    def __len__(self) -> int:
        with self._lock:
            return len(self._schedulers)
