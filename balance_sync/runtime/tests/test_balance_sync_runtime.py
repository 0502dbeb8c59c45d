from datetime import datetime, timezone

import pytest

from balance_sync.config.settings import Settings
from balance_sync.core.time.frozen_time_source import FrozenTimeSource
from balance_sync.runtime.balance_sync_runtime import BalanceSyncRuntime
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.identity import Identity, SubscriptionTier
from balance_sync.sync.domain.network import Network, Provenance
from balance_sync.sync.services.notification_deduplicator import SharedCacheNotificationDeduplicator
from balance_sync.sync.services.sync_scheduler import SchedulerState
from balance_sync.sync.store.file_backup_store import FileBackupStore
from balance_sync.sync.store.in_memory_backup_store import InMemoryBackupStore
from balance_sync.sync.store.in_memory_shared_cache import InMemorySharedCache

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
IDENTITY = Identity("u1", "0xAbC", Network.TESTNET, SubscriptionTier.PRO)


# --- Mocks ---

class TableFetcher:
    def __init__(self, table):
        self.table = table

    def fetch(self, address, network, cancel_token=None):
        return BalanceSnapshot("", network, address, dict(self.table), NOW)


# --- Fixtures ---

@pytest.fixture
def settings(tmp_path):
    return Settings(REDIS_URL=None, BACKUP_DSN=None, BACKUP_DIR=str(tmp_path / "backups"))


def open_runtime(settings, fetcher):
    runtime = BalanceSyncRuntime(settings=settings, fetcher=fetcher, time_source=FrozenTimeSource(NOW))
    runtime.open()
    runtime.session_guard.authenticate("u1")
    return runtime


# --- Tests ---

def test_open_builds_adapters_from_settings(settings):
    with BalanceSyncRuntime(settings=settings, fetcher=TableFetcher({"AZE-t": "1"})) as runtime:
        assert isinstance(runtime.shared_cache, InMemorySharedCache)
        assert isinstance(runtime.backup, FileBackupStore)
        assert runtime.policy_table.tick_interval(SubscriptionTier.PRO).total_seconds() == 120


def test_defaults_to_in_memory_backup():
    runtime = BalanceSyncRuntime(settings=Settings(REDIS_URL=None, BACKUP_DSN=None, BACKUP_DIR=None))
    runtime.open()
    try:
        assert isinstance(runtime.backup, InMemoryBackupStore)
    finally:
        runtime.close()


def test_requires_open():
    runtime = BalanceSyncRuntime(settings=Settings(REDIS_URL=None, BACKUP_DSN=None, BACKUP_DIR=None))

    with pytest.raises(RuntimeError):
        runtime.start_sync(IDENTITY)


def test_sync_flow_end_to_end(settings):
    fetcher = TableFetcher({"AZE-t": "100", "cBRL": "50"})
    runtime = open_runtime(settings, fetcher)
    try:
        report = runtime.start_sync(IDENTITY)
        assert report.provenance is Provenance.LIVE

        scheduler = runtime.registry.get("u1", Network.TESTNET)
        fetcher.table = {"AZE-t": "150", "cBRL": "45"}
        scheduler.tick()
        scheduler.wait_idle(timeout=5)

        titles = [n.title for n in runtime.emitter.list_for_user("u1")]
        assert titles == ["Balance increased - AZE-t (Testnet)", "Balance decreased - cBRL (Testnet)"]

        status = runtime.status_tracker.get_status("u1", Network.TESTNET, "0xabc")
        assert status["status"] == "synced"
        assert runtime.backup.get("u1").balances_table == {"AZE-t": "150", "cBRL": "45"}
        assert runtime.resolver_for(IDENTITY).is_using_emergency() is False

        assert runtime.revoke_session("u1") == 1
        assert scheduler.state is SchedulerState.STOPPED
    finally:
        runtime.close()


def test_changes_while_away_are_reported_on_next_start(settings):
    first = open_runtime(settings, TableFetcher({"AZE-t": "100"}))
    first.start_sync(IDENTITY)
    first.close()

    second = open_runtime(settings, TableFetcher({"AZE-t": "40"}))
    try:
        report = second.start_sync(IDENTITY)

        assert [e.token for e in report.emitted] == ["AZE-t"]
        assert second.emitter.records[0].message.startswith("Detected at login: ")
    finally:
        second.close()


def test_shared_dedup_backend(tmp_path):
    settings = Settings(REDIS_URL=None, BACKUP_DSN=None, BACKUP_DIR=None, DEDUP_BACKEND="shared")
    runtime = open_runtime(settings, TableFetcher({"AZE": "1"}))
    try:
        scheduler = runtime.build_scheduler(IDENTITY)
        assert isinstance(scheduler.cycle.deduplicator, SharedCacheNotificationDeduplicator)
    finally:
        runtime.close()


def test_each_pair_gets_its_own_live_fetch_pool(settings):
    runtime = open_runtime(settings, TableFetcher({"AZE-t": "1"}))
    try:
        testnet = runtime.resolver_for(IDENTITY)
        mainnet = runtime.resolver_for(Identity("u1", "0xAbC", Network.MAINNET, SubscriptionTier.PRO))

        assert runtime.resolver_for(IDENTITY) is testnet
        assert testnet.runner is not mainnet.runner
    finally:
        runtime.close()
