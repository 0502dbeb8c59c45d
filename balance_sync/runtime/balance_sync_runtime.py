import logging
import threading
from typing import Callable, Optional

from balance_sync.config.settings import Settings
from balance_sync.core.concurrency.deadline_runner import DeadlineRunner
from balance_sync.core.logging.structured_runtime_logger import StructuredRuntimeLogger
from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.adapters.explorer.explorer_source_fetcher import ExplorerSourceFetcher
from balance_sync.sync.adapters.in_memory_notification_emitter import InMemoryNotificationEmitter
from balance_sync.sync.adapters.in_memory_session_guard import InMemorySessionGuard
from balance_sync.sync.adapters.tier_policy_table import TierPolicyTable
from balance_sync.sync.domain.cycle_report import CycleReport
from balance_sync.sync.domain.exceptions import BalanceSyncError
from balance_sync.sync.domain.identity import Identity
from balance_sync.sync.domain.network import Network
from balance_sync.sync.interfaces.notification_deduplicator import NotificationDeduplicator
from balance_sync.sync.interfaces.notification_emitter import NotificationEmitter
from balance_sync.sync.interfaces.persistent_backup import PersistentBackup
from balance_sync.sync.interfaces.policy_table import PolicyTable
from balance_sync.sync.interfaces.session_guard import SessionGuard
from balance_sync.sync.interfaces.shared_cache import SharedCache
from balance_sync.sync.interfaces.source_fetcher import SourceFetcher
from balance_sync.sync.services.balance_source_resolver import BalanceSourceResolver
from balance_sync.sync.services.balance_sync_cycle import BalanceSyncCycle
from balance_sync.sync.services.change_detector import ChangeDetector
from balance_sync.sync.services.notification_deduplicator import (
    InMemoryNotificationDeduplicator,
    SharedCacheNotificationDeduplicator,
)
from balance_sync.sync.services.notification_formatter import NotificationFormatter
from balance_sync.sync.services.redis_reconciler import RedisReconciler
from balance_sync.sync.services.resolver_tiers import (
    BackupTier,
    EmergencyTier,
    LiveTier,
    LocalCacheTier,
    SharedCacheTier,
)
from balance_sync.sync.services.scheduler_registry import SchedulerRegistry
from balance_sync.sync.services.sync_scheduler import SyncScheduler
from balance_sync.sync.services.sync_status_tracker import SyncStatusTracker
from balance_sync.sync.store.cache_keys import CacheTtlPolicy
from balance_sync.sync.store.file_backup_store import FileBackupStore
from balance_sync.sync.store.in_memory_backup_store import InMemoryBackupStore
from balance_sync.sync.store.in_memory_shared_cache import InMemorySharedCache
from balance_sync.sync.store.local_snapshot_cache import LocalSnapshotCache
from balance_sync.sync.store.redis_shared_cache import RedisSharedCache
from balance_sync.sync.store.sql_backup_store import SqlBackupStore

logger = logging.getLogger(__name__)


class BalanceSyncRuntime:
    """
    Application context for the sync engine.

    Builds adapters from Settings (anything passed in explicitly wins),
    owns their lifetime and hands out one scheduler per (user, network).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetcher: Optional[SourceFetcher] = None,
        shared_cache: Optional[SharedCache] = None,
        backup: Optional[PersistentBackup] = None,
        emitter: Optional[NotificationEmitter] = None,
        session_guard: Optional[SessionGuard] = None,
        policy_table: Optional[PolicyTable] = None,
        time_source: Optional[TimeSource] = None,
        runtime_logger: Optional[StructuredRuntimeLogger] = None,
        on_report: Optional[Callable[[CycleReport], None]] = None,
    ):
        self.settings = settings or Settings()
        self.fetcher = fetcher
        self.shared_cache = shared_cache
        self.backup = backup
        self.emitter = emitter
        self.session_guard = session_guard
        self.policy_table = policy_table
        self.time_source = time_source or SystemTimeSource()
        self.runtime_logger = runtime_logger or StructuredRuntimeLogger()
        self.on_report = on_report

        self.ttl_policy = CacheTtlPolicy.from_settings(self.settings)
        self.local_cache: Optional[LocalSnapshotCache] = None
        self.status_tracker: Optional[SyncStatusTracker] = None
        self.reconciler: Optional[RedisReconciler] = None
        self.registry: Optional[SchedulerRegistry] = None
        self._resolvers = {}
        self._lock = threading.Lock()
        self._opened = False

    def open(self) -> "BalanceSyncRuntime":
        with self._lock:
            if self._opened:
                return self
            s = self.settings
            self.fetcher = self.fetcher or ExplorerSourceFetcher.from_settings(s, time_source=self.time_source)
            self.shared_cache = self.shared_cache or self._build_shared_cache()
            self.backup = self.backup or self._build_backup()
            self.emitter = self.emitter or InMemoryNotificationEmitter(time_source=self.time_source)
            self.session_guard = self.session_guard or InMemorySessionGuard()
            self.policy_table = self.policy_table or TierPolicyTable.from_settings(s)

            self.local_cache = LocalSnapshotCache(time_source=self.time_source)
            self.status_tracker = SyncStatusTracker(
                self.shared_cache,
                ttl_policy=self.ttl_policy,
                max_history=s.HISTORY_MAX_ENTRIES,
                time_source=self.time_source,
            )
            self.reconciler = RedisReconciler(
                self.shared_cache,
                ttl_policy=self.ttl_policy,
                tolerance=s.RECONCILE_TOLERANCE,
                max_age_seconds=s.RECONCILE_MAX_AGE_SECONDS,
                status_tracker=self.status_tracker,
                runtime_logger=self.runtime_logger,
            )
            self.registry = SchedulerRegistry(self.build_scheduler)
            self._opened = True

        self.runtime_logger.emit(
            "runtime.opened",
            shared_cache=type(self.shared_cache).__name__,
            backup=type(self.backup).__name__,
        )
        return self

    def close(self) -> None:
        with self._lock:
            if not self._opened:
                return
            self._opened = False
            registry = self.registry
            resolvers = list(self._resolvers.values())
            self._resolvers.clear()
        registry.stop_all()
        for resolver in resolvers:
            resolver.close()
        self.runtime_logger.emit("runtime.closed")

    def __enter__(self) -> "BalanceSyncRuntime":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start_sync(self, identity: Identity) -> Optional[CycleReport]:
        self._require_open()
        return self.registry.ensure_started(identity)

    def stop_sync(self, user_id: str, network: Network) -> bool:
        self._require_open()
        return self.registry.stop(user_id, network)

    def revoke_session(self, user_id: str) -> int:
        """Revokes the user's session and stops all of their polling."""
        self._require_open()
        if isinstance(self.session_guard, InMemorySessionGuard):
            self.session_guard.revoke(user_id)
        return self.registry.revoke_user(user_id)

    def resolver_for(self, identity: Identity) -> BalanceSourceResolver:
        self._require_open()
        with self._lock:
            resolver = self._resolvers.get(identity.pair_key)
            if resolver is None:
                resolver = self._build_resolver()
                self._resolvers[identity.pair_key] = resolver
            return resolver

    def build_scheduler(self, identity: Identity) -> SyncScheduler:
        s = self.settings
        cycle = BalanceSyncCycle(
            resolver=self.resolver_for(identity),
            detector=ChangeDetector(
                threshold=s.CHANGE_THRESHOLD,
                min_absolute_change=s.MIN_ABSOLUTE_CHANGE,
                placeholder_tokens=s.PLACEHOLDER_TOKENS,
                time_source=self.time_source,
            ),
            deduplicator=self._build_deduplicator(identity),
            emitter=self.emitter,
            formatter=NotificationFormatter(),
            runtime_logger=self.runtime_logger,
        )
        self._seed_from_backup(cycle, identity)
        return SyncScheduler(
            cycle=cycle,
            session_guard=self.session_guard,
            policy_table=self.policy_table,
            runtime_logger=self.runtime_logger,
            on_report=self.on_report,
        )

    def _build_resolver(self) -> BalanceSourceResolver:
        s = self.settings
        tiers = [
            LiveTier(self.fetcher, timeout_seconds=s.LIVE_FETCH_TIMEOUT_SECONDS),
            SharedCacheTier(self.shared_cache, self.time_source),
            LocalCacheTier(self.local_cache, freshness_seconds=s.LOCAL_CACHE_FRESHNESS_SECONDS),
            BackupTier(self.backup, self.time_source),
            EmergencyTier(self.time_source, extra_tokens=s.EMERGENCY_TOKENS),
        ]
        return BalanceSourceResolver(
            tiers=tiers,
            session_guard=self.session_guard,
            local_cache=self.local_cache,
            shared_cache=self.shared_cache,
            backup=self.backup,
            reconciler=self.reconciler,
            runner=DeadlineRunner(max_workers=s.LIVE_FETCH_WORKERS_PER_PAIR),
            ttl_policy=self.ttl_policy,
            tier_timeout_seconds=s.TIER_TIMEOUT_SECONDS,
            time_source=self.time_source,
            runtime_logger=self.runtime_logger,
        )

    def _build_deduplicator(self, identity: Identity) -> NotificationDeduplicator:
        s = self.settings
        if s.DEDUP_BACKEND == "shared":
            return SharedCacheNotificationDeduplicator(
                self.shared_cache,
                identity.user_id,
                identity.network,
                window_seconds=s.DEDUP_WINDOW_SECONDS,
                max_signatures=s.DEDUP_MAX_SIGNATURES,
                time_source=self.time_source,
            )
        return InMemoryNotificationDeduplicator(
            window_seconds=s.DEDUP_WINDOW_SECONDS,
            max_signatures=s.DEDUP_MAX_SIGNATURES,
            time_source=self.time_source,
        )

    def _build_shared_cache(self) -> SharedCache:
        if self.settings.REDIS_URL:
            return RedisSharedCache.from_url(
                self.settings.REDIS_URL,
                timeout_seconds=self.settings.TIER_TIMEOUT_SECONDS,
                time_source=self.time_source,
            )
        logger.warning("REDIS_URL not set, using in-memory shared cache")
        return InMemorySharedCache(time_source=self.time_source)

    def _build_backup(self) -> PersistentBackup:
        if self.settings.BACKUP_DSN:
            return SqlBackupStore.from_dsn(
                self.settings.BACKUP_DSN,
                timeout_seconds=self.settings.TIER_TIMEOUT_SECONDS,
            )
        if self.settings.BACKUP_DIR:
            return FileBackupStore(self.settings.BACKUP_DIR)
        return InMemoryBackupStore()

    def _seed_from_backup(self, cycle: BalanceSyncCycle, identity: Identity) -> None:
        try:
            previous = self.backup.get(identity.user_id)
        except BalanceSyncError as e:
            logger.warning(f"Could not load previous balances for {identity.pair_key}: {e}")
            return
        if previous is None or previous.network != identity.network:
            return
        if previous.address.lower() != identity.address.lower():
            return
        cycle.seed_baseline(previous)

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("BalanceSyncRuntime is not open")
