from dataclasses import dataclass
from enum import Enum

from balance_sync.sync.domain.network import Network


class SubscriptionTier(Enum):
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"


@dataclass(frozen=True)
class Identity:
    user_id: str
    address: str
    network: Network
    subscription_tier: SubscriptionTier = SubscriptionTier.BASIC

    @property
    def pair_key(self) -> str:
        return f"{self.user_id}:{self.network.value}"
