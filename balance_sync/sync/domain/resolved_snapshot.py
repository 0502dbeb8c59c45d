from dataclasses import dataclass, field
from typing import List, Optional

from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.field_diff import ReconcileResult
from balance_sync.sync.domain.network import Provenance


@dataclass(frozen=True)
class TierFailure:
    tier: str
    reason: str


@dataclass(frozen=True)
class ResolvedSnapshot:
    """
    Tagged result of one pass through the tier chain.
    failures lists every tier that was tried and did not produce data.
    reconcile is set when a live snapshot was pushed to the shared cache.
    """
    snapshot: BalanceSnapshot
    provenance: Provenance
    stale: bool = False
    age_seconds: float = 0.0
    failures: List[TierFailure] = field(default_factory=list)
    reconcile: Optional[ReconcileResult] = None

    @property
    def degraded(self) -> bool:
        return not self.provenance.authoritative
