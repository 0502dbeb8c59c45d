from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import List, Optional

from balance_sync.core.concurrency.cancellation import CancellationToken
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.balance_math import ZERO, format_balance
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.network import Network, Provenance
from balance_sync.sync.interfaces.persistent_backup import PersistentBackup
from balance_sync.sync.interfaces.shared_cache import SharedCache
from balance_sync.sync.interfaces.source_fetcher import SourceFetcher
from balance_sync.sync.store.cache_keys import balance_key
from balance_sync.sync.store.local_snapshot_cache import LocalSnapshotCache


@dataclass(frozen=True)
class ResolveRequest:
    user_id: str
    address: str
    network: Network
    cancel_token: Optional[CancellationToken] = None


@dataclass(frozen=True)
class TierResult:
    snapshot: BalanceSnapshot
    stale: bool = False
    age_seconds: float = 0.0


class ResolverTier(ABC):
    """
    One step of the fallback chain.
    attempt() returns None on a miss and raises on failure; the resolver
    treats both as "try the next tier".
    """
    name: str = ""
    provenance: Provenance
    # Bounded tiers run on the resolver's abandonable worker pool.
    bounded: bool = False
    # Seconds; None means the resolver's default tier timeout.
    timeout_seconds: Optional[float] = None

    @abstractmethod
    def attempt(self, request: ResolveRequest) -> Optional[TierResult]:
        pass


def _age_seconds(time_source: TimeSource, snapshot: BalanceSnapshot) -> float:
    return time_source.seconds_since(snapshot.captured_at)


def _same_wallet(snapshot: BalanceSnapshot, request: ResolveRequest) -> bool:
    return snapshot.network == request.network and snapshot.address.lower() == request.address.lower()


class LiveTier(ResolverTier):
    name = "live"
    provenance = Provenance.LIVE
    bounded = True

    def __init__(self, fetcher: SourceFetcher, timeout_seconds: float = 20.0):
        self.fetcher = fetcher
        self.timeout_seconds = timeout_seconds

    def attempt(self, request: ResolveRequest) -> Optional[TierResult]:
        fetched = self.fetcher.fetch(request.address, request.network, cancel_token=request.cancel_token)
        if fetched.is_empty:
            return None
        snapshot = replace(fetched, user_id=request.user_id, provenance=Provenance.LIVE)
        return TierResult(snapshot=snapshot)


class SharedCacheTier(ResolverTier):
    name = "shared_cache"
    provenance = Provenance.SHARED_CACHE

    def __init__(self, cache: SharedCache, time_source: TimeSource):
        self.cache = cache
        self.time_source = time_source

    def attempt(self, request: ResolveRequest) -> Optional[TierResult]:
        entry = self.cache.get(balance_key(request.user_id, request.network, request.address))
        if entry is None:
            return None
        snapshot = BalanceSnapshot.from_dict(entry.payload)
        if snapshot.is_empty or not _same_wallet(snapshot, request):
            return None
        age = self.time_source.seconds_since(entry.cached_at)
        return TierResult(snapshot=snapshot.with_provenance(Provenance.SHARED_CACHE), age_seconds=age)


class LocalCacheTier(ResolverTier):
    name = "local_cache"
    provenance = Provenance.LOCAL_CACHE

    def __init__(self, local_cache: LocalSnapshotCache, freshness_seconds: float = 60.0):
        self.local_cache = local_cache
        self.freshness_seconds = freshness_seconds

    def attempt(self, request: ResolveRequest) -> Optional[TierResult]:
        hit = self.local_cache.get(request.user_id, request.network)
        if hit is None or hit.snapshot.is_empty or not _same_wallet(hit.snapshot, request):
            return None
        return TierResult(
            snapshot=hit.snapshot.with_provenance(Provenance.LOCAL_CACHE),
            stale=hit.age_seconds > self.freshness_seconds,
            age_seconds=hit.age_seconds,
        )


class BackupTier(ResolverTier):
    name = "backup"
    provenance = Provenance.BACKUP

    def __init__(self, backup: PersistentBackup, time_source: TimeSource):
        self.backup = backup
        self.time_source = time_source

    def attempt(self, request: ResolveRequest) -> Optional[TierResult]:
        snapshot = self.backup.get(request.user_id)
        if snapshot is None or snapshot.is_empty or not _same_wallet(snapshot, request):
            return None
        return TierResult(
            snapshot=snapshot.with_provenance(Provenance.BACKUP),
            stale=True,
            age_seconds=_age_seconds(self.time_source, snapshot),
        )


class EmergencyTier(ResolverTier):
    """Last resort: zeroed placeholders so callers always get a table."""
    name = "emergency"
    provenance = Provenance.EMERGENCY

    def __init__(self, time_source: TimeSource, extra_tokens: List[str] = None):
        self.time_source = time_source
        self.extra_tokens = list(extra_tokens if extra_tokens is not None else ["cBRL", "STT"])

    def tokens_for(self, network: Network) -> List[str]:
        tokens = [network.native_symbol]
        tokens.extend(t for t in self.extra_tokens if t not in tokens)
        return tokens

    def attempt(self, request: ResolveRequest) -> Optional[TierResult]:
        zero = format_balance(ZERO)
        snapshot = BalanceSnapshot(
            user_id=request.user_id,
            network=request.network,
            address=request.address,
            balances_table={token: zero for token in self.tokens_for(request.network)},
            captured_at=self.time_source.now(),
            provenance=Provenance.EMERGENCY,
            metadata={"emergency": True},
        )
        return TierResult(snapshot=snapshot, stale=True)
