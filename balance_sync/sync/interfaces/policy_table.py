from abc import ABC, abstractmethod
from datetime import timedelta

from balance_sync.sync.domain.identity import SubscriptionTier


class PolicyTable(ABC):
    """
    Lookup of polling cadence per subscription tier. Data, not logic.
    """
    @abstractmethod
    def tick_interval(self, tier: SubscriptionTier) -> timedelta:
        pass
