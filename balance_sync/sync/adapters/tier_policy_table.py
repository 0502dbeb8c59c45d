import logging
from datetime import timedelta
from typing import Dict, Mapping

from balance_sync.sync.domain.identity import SubscriptionTier
from balance_sync.sync.interfaces.policy_table import PolicyTable

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS_SECONDS = {"basic": 300, "pro": 120, "premium": 60}


class TierPolicyTable(PolicyTable):
    """
    Tick interval per subscription tier, loaded from configuration.
    Tiers missing from the table poll at the basic cadence.
    """

    def __init__(self, intervals_seconds: Mapping[str, int] = None):
        raw = dict(intervals_seconds or DEFAULT_INTERVALS_SECONDS)
        self._intervals: Dict[SubscriptionTier, timedelta] = {}
        for name, seconds in raw.items():
            try:
                tier = SubscriptionTier(name)
            except ValueError:
                logger.warning(f"Ignoring interval for unknown subscription tier {name!r}")
                continue
            if seconds <= 0:
                raise ValueError(f"tick interval for {name} must be positive")
            self._intervals[tier] = timedelta(seconds=seconds)

        if SubscriptionTier.BASIC not in self._intervals:
            self._intervals[SubscriptionTier.BASIC] = timedelta(seconds=DEFAULT_INTERVALS_SECONDS["basic"])

    @classmethod
    def from_settings(cls, settings) -> "TierPolicyTable":
        return cls(settings.TIER_INTERVALS_SECONDS)

    def tick_interval(self, tier: SubscriptionTier) -> timedelta:
        return self._intervals.get(tier, self._intervals[SubscriptionTier.BASIC])
