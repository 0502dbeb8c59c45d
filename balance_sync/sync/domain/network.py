from enum import Enum


class Network(Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"

    @property
    def native_symbol(self) -> str:
        return "AZE-t" if self is Network.TESTNET else "AZE"

    @property
    def label(self) -> str:
        return "Testnet" if self is Network.TESTNET else "Mainnet"


class Provenance(Enum):
    """Which tier produced a snapshot. Only LIVE is authoritative."""
    LIVE = "live"
    SHARED_CACHE = "shared_cache"
    LOCAL_CACHE = "local_cache"
    BACKUP = "backup"
    EMERGENCY = "emergency"

    @property
    def authoritative(self) -> bool:
        return self is Provenance.LIVE
