from abc import ABC, abstractmethod
from typing import Optional

from balance_sync.core.concurrency.cancellation import CancellationToken
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.network import Network


class SourceFetcher(ABC):
    """
    Interface for reading balances straight from the chain or an explorer.
    """
    @abstractmethod
    def fetch(
        self,
        address: str,
        network: Network,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BalanceSnapshot:
        """
        Returns a snapshot tagged LIVE.
        Raises SourceError subclasses on failure; SourceAuthorizationError
        when the credentials were rejected.
        """
        pass
