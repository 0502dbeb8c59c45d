from abc import ABC, abstractmethod
from datetime import datetime


class TimeSource(ABC):
    """
    Clock port for the sync engine.
    Snapshot ages, dedup windows and cache expiry all read time through it,
    so a test can pin every one of them to the same instant.
    """
    @abstractmethod
    def now(self) -> datetime:
        pass

    def seconds_since(self, moment: datetime) -> float:
        """Age of `moment` in seconds; a moment in the future counts as zero."""
        return max(0.0, (self.now() - moment).total_seconds())
