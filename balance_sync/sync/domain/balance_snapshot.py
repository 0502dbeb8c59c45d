from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping

from balance_sync.sync.domain.network import Network, Provenance


@dataclass(frozen=True)
class BalanceSnapshot:
    """
    One observation of a wallet's token balances.

    A token missing from balances_table is unknown, not zero.
    """
    user_id: str
    network: Network
    address: str
    balances_table: Mapping[str, str]
    captured_at: datetime
    provenance: Provenance = Provenance.LIVE
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.balances_table

    @property
    def authoritative(self) -> bool:
        return self.provenance.authoritative

    def with_provenance(self, provenance: Provenance) -> "BalanceSnapshot":
        return replace(self, provenance=provenance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "network": self.network.value,
            "address": self.address,
            "balances_table": dict(self.balances_table),
            "captured_at": self.captured_at.isoformat(),
            "provenance": self.provenance.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BalanceSnapshot":
        return cls(
            user_id=str(data["user_id"]),
            network=Network(data["network"]),
            address=str(data["address"]),
            balances_table={str(k): str(v) for k, v in dict(data.get("balances_table") or {}).items()},
            captured_at=datetime.fromisoformat(data["captured_at"]),
            provenance=Provenance(data.get("provenance", Provenance.LIVE.value)),
            metadata=dict(data.get("metadata") or {}),
        )
