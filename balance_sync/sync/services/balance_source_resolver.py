import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import List, Optional

from balance_sync.core.concurrency.cancellation import CancellationToken, OperationCancelledError
from balance_sync.core.concurrency.deadline_runner import DeadlineExceededError, DeadlineRunner
from balance_sync.core.logging.structured_runtime_logger import StructuredRuntimeLogger
from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import (
    AuthorizationError,
    CycleCancelledError,
    SourceAuthorizationError,
)
from balance_sync.sync.domain.field_diff import ReconcileResult
from balance_sync.sync.domain.network import Network, Provenance
from balance_sync.sync.domain.resolved_snapshot import ResolvedSnapshot, TierFailure
from balance_sync.sync.interfaces.persistent_backup import PersistentBackup
from balance_sync.sync.interfaces.session_guard import SessionGuard
from balance_sync.sync.interfaces.shared_cache import SharedCache
from balance_sync.sync.services.redis_reconciler import RedisReconciler
from balance_sync.sync.services.resolver_tiers import (
    EmergencyTier,
    ResolveRequest,
    ResolverTier,
    TierResult,
)
from balance_sync.sync.store.cache_keys import CacheCategory, CacheTtlPolicy, balance_key
from balance_sync.sync.store.local_snapshot_cache import LocalSnapshotCache

logger = logging.getLogger(__name__)


class BalanceSourceResolver:
    """
    Walks the tier chain (live, shared cache, local cache, backup, emergency)
    and returns the first non-empty snapshot tagged with where it came from.

    The live fetch runs on the worker pool under its deadline. Cache and
    backup tiers are called inline and rely on their adapters' own timeouts.

    Only authorization failures escape. Cancellation surfaces as
    CycleCancelledError for the scheduler; every other failure is recorded
    on the result and the next tier is tried.
    """

    def __init__(
        self,
        tiers: List[ResolverTier],
        session_guard: SessionGuard,
        local_cache: LocalSnapshotCache,
        shared_cache: Optional[SharedCache] = None,
        backup: Optional[PersistentBackup] = None,
        reconciler: Optional[RedisReconciler] = None,
        runner: Optional[DeadlineRunner] = None,
        ttl_policy: Optional[CacheTtlPolicy] = None,
        tier_timeout_seconds: float = 3.0,
        time_source: Optional[TimeSource] = None,
        runtime_logger: Optional[StructuredRuntimeLogger] = None,
    ):
        if not tiers or not isinstance(tiers[-1], EmergencyTier):
            raise ValueError("tier chain must end with the emergency tier")
        self.tiers = list(tiers)
        self.session_guard = session_guard
        self.local_cache = local_cache
        self.shared_cache = shared_cache
        self.backup = backup
        self.reconciler = reconciler
        self.runner = runner or DeadlineRunner()
        self.ttl_policy = ttl_policy or CacheTtlPolicy()
        self.tier_timeout_seconds = tier_timeout_seconds
        self.time_source = time_source or SystemTimeSource()
        self.runtime_logger = runtime_logger or StructuredRuntimeLogger()
        self._last_emergency_at: Optional[datetime] = None
        self._lock = Lock()

    def resolve(
        self,
        user_id: str,
        address: str,
        network: Network,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ResolvedSnapshot:
        request = ResolveRequest(user_id=user_id, address=address, network=network, cancel_token=cancel_token)
        failures: List[TierFailure] = []

        for tier in self.tiers:
            self._check_can_continue(request)

            try:
                result = self._attempt(tier, request)
            except (SourceAuthorizationError, AuthorizationError) as e:
                self.runtime_logger.warning("sync.auth.rejected", user_id=user_id, tier=tier.name, reason=str(e))
                raise AuthorizationError(f"{tier.name} rejected credentials for {user_id}") from e
            except OperationCancelledError as e:
                raise CycleCancelledError(str(e)) from e
            except DeadlineExceededError as e:
                self._record_failure(failures, tier, f"timeout: {e}", request)
                continue
            except Exception as e:
                logger.warning(f"Tier {tier.name} failed for {user_id}/{network.value}: {e}")
                self._record_failure(failures, tier, f"{type(e).__name__}: {e}", request)
                continue

            if result is None:
                self._record_failure(failures, tier, "empty", request)
                continue

            return self._accept(tier, result, request, failures)

        # The emergency tier never misses; reaching here means it raised.
        raise RuntimeError("emergency tier produced no snapshot")

    def is_using_emergency(self, window: timedelta = timedelta(minutes=60)) -> bool:
        with self._lock:
            last = self._last_emergency_at
        if last is None:
            return False
        return self.time_source.now() - last < window

    def close(self) -> None:
        self.runner.shutdown()

    def _check_can_continue(self, request: ResolveRequest) -> None:
        if request.cancel_token is not None and request.cancel_token.is_cancelled:
            raise CycleCancelledError(request.cancel_token.reason or "cancelled")
        if not self.session_guard.is_authenticated(request.user_id):
            raise AuthorizationError(f"user {request.user_id} is not authenticated")

    def _attempt(self, tier: ResolverTier, request: ResolveRequest) -> Optional[TierResult]:
        if not tier.bounded:
            return tier.attempt(request)
        timeout = tier.timeout_seconds if tier.timeout_seconds is not None else self.tier_timeout_seconds
        return self.runner.run(
            tier.attempt,
            request,
            timeout_seconds=timeout,
            cancel_token=request.cancel_token,
        )

    def _record_failure(
        self,
        failures: List[TierFailure],
        tier: ResolverTier,
        reason: str,
        request: ResolveRequest,
    ) -> None:
        failures.append(TierFailure(tier=tier.name, reason=reason))
        if reason != "empty":
            self.runtime_logger.warning(
                "sync.tier.failed",
                user_id=request.user_id,
                network=request.network.value,
                tier=tier.name,
                reason=reason,
            )

    def _accept(
        self,
        tier: ResolverTier,
        result: TierResult,
        request: ResolveRequest,
        failures: List[TierFailure],
    ) -> ResolvedSnapshot:
        reconcile = None
        if tier.provenance is Provenance.LIVE:
            reconcile = self._write_through(result.snapshot)
        elif tier.provenance is Provenance.SHARED_CACHE:
            self.local_cache.put(result.snapshot)
        elif tier.provenance is Provenance.EMERGENCY:
            with self._lock:
                self._last_emergency_at = self.time_source.now()
            logger.warning(f"Serving emergency balances for {request.user_id}/{request.network.value}")

        return ResolvedSnapshot(
            snapshot=result.snapshot,
            provenance=tier.provenance,
            stale=result.stale,
            age_seconds=result.age_seconds,
            failures=failures,
            reconcile=reconcile,
        )

    def _write_through(self, snapshot: BalanceSnapshot) -> Optional[ReconcileResult]:
        """
        Pushes a live snapshot to every lower tier.
        Runs to completion even if the cycle is cancelled meanwhile.
        """
        self.local_cache.put(snapshot)

        reconcile = None
        if self.reconciler is not None:
            try:
                reconcile = self.reconciler.reconcile(snapshot.user_id, snapshot.address, snapshot)
            except Exception as e:
                self._log_write_failure("shared_cache", snapshot, e)
                reconcile = ReconcileResult(synced=False, error=str(e))
        elif self.shared_cache is not None:
            try:
                self.shared_cache.set(
                    balance_key(snapshot.user_id, snapshot.network, snapshot.address),
                    snapshot.to_dict(),
                    self.ttl_policy.ttl_for(CacheCategory.USER_BALANCE),
                )
            except Exception as e:
                self._log_write_failure("shared_cache", snapshot, e)

        if self.backup is not None:
            try:
                self.backup.put(snapshot.user_id, snapshot)
            except Exception as e:
                self._log_write_failure("backup", snapshot, e)

        return reconcile

    def _log_write_failure(self, tier: str, snapshot: BalanceSnapshot, error: Exception) -> None:
        logger.error(f"Failed to write {tier} for {snapshot.user_id}/{snapshot.network.value}: {error}")
        self.runtime_logger.warning(
            "sync.tier.write_failed",
            user_id=snapshot.user_id,
            network=snapshot.network.value,
            tier=tier,
            reason=str(error),
        )
