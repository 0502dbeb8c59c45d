import threading
from datetime import datetime, timedelta

from balance_sync.core.time.time_source import TimeSource


class FrozenTimeSource(TimeSource):
    """
    Manually driven clock for tests.
    Scheduler and resolver threads may read it while the test advances it.
    """
    def __init__(self, start_time: datetime):
        if start_time.tzinfo is None:
            raise ValueError("FrozenTimeSource requires timezone-aware datetime")
        self._current_time = start_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current_time

    def advance(self, delta: timedelta) -> datetime:
        if delta < timedelta(0):
            raise ValueError("clock cannot move backwards")
        with self._lock:
            self._current_time += delta
            return self._current_time
