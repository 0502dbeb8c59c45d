from dataclasses import dataclass, field
from typing import List, Optional

from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.change_event import ChangeEvent
from balance_sync.sync.domain.field_diff import ReconcileResult
from balance_sync.sync.domain.network import Provenance


@dataclass(frozen=True)
class CycleReport:
    provenance: Provenance
    snapshot: BalanceSnapshot
    stale: bool = False
    events: List[ChangeEvent] = field(default_factory=list)
    emitted: List[ChangeEvent] = field(default_factory=list)
    suppressed: List[ChangeEvent] = field(default_factory=list)
    reconcile: Optional[ReconcileResult] = None
