import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Mapping, Optional

from balance_sync.core.logging.structured_runtime_logger import StructuredRuntimeLogger
from balance_sync.sync.domain.balance_math import ZERO, format_balance, parse_balance
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import CacheError, MalformedBalanceError
from balance_sync.sync.domain.field_diff import DiffType, FieldDiff, ReconcileResult
from balance_sync.sync.interfaces.shared_cache import SharedCache
from balance_sync.sync.services.sync_status_tracker import SyncStatusTracker
from balance_sync.sync.store.cache_keys import CacheCategory, CacheTtlPolicy, balance_key

logger = logging.getLogger(__name__)


class RedisReconciler:
    """
    Keeps the shared cache entry for a wallet in line with a fresh snapshot,
    writing only when the two diverge.
    """

    def __init__(
        self,
        cache: SharedCache,
        ttl_policy: Optional[CacheTtlPolicy] = None,
        tolerance: Decimal = Decimal("0.000001"),
        max_age_seconds: float = 300,
        status_tracker: Optional[SyncStatusTracker] = None,
        runtime_logger: Optional[StructuredRuntimeLogger] = None,
    ):
        self.cache = cache
        self.ttl_policy = ttl_policy or CacheTtlPolicy()
        self.tolerance = Decimal(str(tolerance))
        self.max_age_seconds = max_age_seconds
        self.status_tracker = status_tracker
        self.runtime_logger = runtime_logger or StructuredRuntimeLogger()

    def reconcile(self, user_id: str, address: str, local_snapshot: BalanceSnapshot) -> ReconcileResult:
        key = balance_key(user_id, local_snapshot.network, address)
        try:
            entry = self.cache.get(key)
            if entry is None:
                self._write(key, user_id, address, local_snapshot)
                return ReconcileResult(synced=True, changes=[])

            payload = entry.payload if isinstance(entry.payload, dict) else {}
            cached_table = payload.get("balances_table")
            if not isinstance(cached_table, dict):
                # Foreign or corrupt entry: overwrite it.
                cached_table = {}
                out_of_sync = True
            else:
                out_of_sync = self._is_out_of_sync(local_snapshot.captured_at, payload)
            changes = self.diff(local_snapshot.balances_table, cached_table)

            if not changes and not out_of_sync:
                return ReconcileResult(synced=False, changes=[])

            self._write(key, user_id, address, local_snapshot)
            self.runtime_logger.emit(
                "reconcile.written",
                user_id=user_id,
                network=local_snapshot.network.value,
                changes=len(changes),
                out_of_sync=out_of_sync,
            )
            return ReconcileResult(synced=True, changes=changes, out_of_sync=out_of_sync)
        except CacheError as e:
            logger.error(f"Reconcile failed for {user_id}/{local_snapshot.network.value}: {e}")
            return ReconcileResult(synced=False, changes=[], error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected reconcile failure for {user_id}/{local_snapshot.network.value}")
            return ReconcileResult(synced=False, changes=[], error=f"{type(e).__name__}: {e}")

    def diff(self, local: Mapping[str, str], cached: Mapping[str, str]) -> List[FieldDiff]:
        changes: List[FieldDiff] = []

        for token, raw_local in local.items():
            try:
                local_value = parse_balance(raw_local)
            except MalformedBalanceError as e:
                logger.warning(f"Skipping malformed local balance for {token}: {e}")
                continue

            if token not in cached:
                if local_value > ZERO:
                    changes.append(
                        FieldDiff(token, format_balance(local_value), "0", format_balance(local_value), DiffType.NEW_TOKEN)
                    )
                continue

            raw_cached = cached[token]
            try:
                cached_value = parse_balance(raw_cached)
            except MalformedBalanceError:
                # Unreadable cached value always differs.
                kind = DiffType.INCREASE if local_value > ZERO else DiffType.DECREASE
                changes.append(FieldDiff(token, format_balance(local_value), str(raw_cached), format_balance(local_value), kind))
                continue

            delta = local_value - cached_value
            if abs(delta) <= self.tolerance:
                continue
            kind = DiffType.INCREASE if delta > ZERO else DiffType.DECREASE
            changes.append(
                FieldDiff(token, format_balance(local_value), format_balance(cached_value), format_balance(delta), kind)
            )

        for token, raw_cached in cached.items():
            if token in local:
                continue
            try:
                cached_value = parse_balance(raw_cached)
            except MalformedBalanceError:
                continue
            if cached_value > ZERO:
                changes.append(
                    FieldDiff(token, "0", format_balance(cached_value), format_balance(-cached_value), DiffType.REMOVED_TOKEN)
                )

        return changes

    def _is_out_of_sync(self, local_captured_at: datetime, payload: dict) -> bool:
        raw = payload.get("captured_at")
        if not raw:
            return True
        try:
            cached_at = datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            return True
        # Naive timestamps are read as UTC.
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        if local_captured_at.tzinfo is None:
            local_captured_at = local_captured_at.replace(tzinfo=timezone.utc)
        return abs((local_captured_at - cached_at).total_seconds()) > self.max_age_seconds

    def _write(self, key: str, user_id: str, address: str, snapshot: BalanceSnapshot) -> None:
        self.cache.set(key, snapshot.to_dict(), self.ttl_policy.ttl_for(CacheCategory.USER_BALANCE))
        if self.status_tracker is not None:
            self.status_tracker.record_sync(user_id, address, snapshot, source=snapshot.provenance.value)
