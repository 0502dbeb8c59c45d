import threading
from datetime import datetime, timezone

import pytest

from balance_sync.core.concurrency.deadline_runner import DeadlineRunner
from balance_sync.core.time.frozen_time_source import FrozenTimeSource
from balance_sync.sync.adapters.in_memory_notification_emitter import InMemoryNotificationEmitter
from balance_sync.sync.adapters.in_memory_session_guard import InMemorySessionGuard
from balance_sync.sync.adapters.tier_policy_table import TierPolicyTable
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import AuthorizationError, SourceAuthorizationError
from balance_sync.sync.domain.identity import Identity, SubscriptionTier
from balance_sync.sync.domain.network import Network, Provenance
from balance_sync.sync.services.balance_source_resolver import BalanceSourceResolver
from balance_sync.sync.services.balance_sync_cycle import BalanceSyncCycle
from balance_sync.sync.services.change_detector import ChangeDetector
from balance_sync.sync.services.notification_deduplicator import InMemoryNotificationDeduplicator
from balance_sync.sync.services.resolver_tiers import EmergencyTier, LiveTier
from balance_sync.sync.services.scheduler_registry import SchedulerRegistry
from balance_sync.sync.services.sync_scheduler import SchedulerState, SyncScheduler
from balance_sync.sync.store.local_snapshot_cache import LocalSnapshotCache

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
IDENTITY = Identity("u1", "0xabc", Network.TESTNET, SubscriptionTier.PREMIUM)


# --- Mocks ---

class GatedFetcher:
    """Blocks each fetch until the gate is open."""
    def __init__(self, table):
        self.table = table
        self.gate = threading.Event()
        self.gate.set()
        self.entered = threading.Event()
        self.error = None
        self.calls = 0

    def fetch(self, address, network, cancel_token=None):
        self.calls += 1
        self.entered.set()
        self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return BalanceSnapshot("", network, address, dict(self.table), NOW)


# --- Fixtures ---

@pytest.fixture
def clock():
    return FrozenTimeSource(NOW)


@pytest.fixture
def guard():
    g = InMemorySessionGuard()
    g.authenticate("u1")
    return g


@pytest.fixture
def runner():
    r = DeadlineRunner(max_workers=4, poll_interval_seconds=0.01)
    yield r
    r.shutdown()


@pytest.fixture
def fetcher():
    return GatedFetcher({"AZE-t": "100"})


@pytest.fixture
def emitter(clock):
    return InMemoryNotificationEmitter(time_source=clock)


@pytest.fixture
def make_scheduler(clock, guard, runner, fetcher, emitter):
    created = []

    def factory(identity=IDENTITY):
        local = LocalSnapshotCache(time_source=clock)
        resolver = BalanceSourceResolver(
            tiers=[LiveTier(fetcher, timeout_seconds=5.0), EmergencyTier(clock)],
            session_guard=guard,
            local_cache=local,
            runner=runner,
            time_source=clock,
        )
        cycle = BalanceSyncCycle(
            resolver=resolver,
            detector=ChangeDetector(time_source=clock),
            deduplicator=InMemoryNotificationDeduplicator(time_source=clock),
            emitter=emitter,
        )
        scheduler = SyncScheduler(cycle, guard, TierPolicyTable())
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.shutdown()


# --- Tests ---

def test_start_requires_authenticated_identity(make_scheduler, guard, fetcher):
    guard.revoke("u1")
    scheduler = make_scheduler()

    with pytest.raises(AuthorizationError):
        scheduler.start(IDENTITY)

    assert scheduler.state is SchedulerState.IDLE
    assert fetcher.calls == 0


def test_start_runs_one_cycle_immediately(make_scheduler):
    scheduler = make_scheduler()

    report = scheduler.start(IDENTITY)

    assert report.provenance is Provenance.LIVE
    assert scheduler.state is SchedulerState.RUNNING
    assert scheduler.last_report is report


def test_tick_runs_cycle_in_background(make_scheduler, fetcher, emitter):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)
    fetcher.table = {"AZE-t": "120"}

    assert scheduler.tick() is True
    scheduler.wait_idle(timeout=5)

    assert len(emitter.records) == 1
    assert scheduler.busy is False


def test_tick_while_busy_is_skipped(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)
    fetcher.gate.clear()
    fetcher.entered.clear()

    assert scheduler.tick() is True
    assert fetcher.entered.wait(5)
    assert scheduler.tick() is False
    assert scheduler.skipped_ticks == 1

    fetcher.gate.set()
    scheduler.wait_idle(timeout=5)
    assert fetcher.calls == 2


def test_concurrent_skipped_ticks_are_all_counted(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)
    fetcher.gate.clear()
    fetcher.entered.clear()
    assert scheduler.tick() is True
    assert fetcher.entered.wait(5)

    threads = [threading.Thread(target=scheduler.tick) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert scheduler.skipped_ticks == 8
    fetcher.gate.set()
    scheduler.wait_idle(timeout=5)


def test_stop_cancels_in_flight_cycle(make_scheduler, fetcher, emitter):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)
    fetcher.table = {"AZE-t": "500"}
    fetcher.gate.clear()
    fetcher.entered.clear()
    scheduler.tick()
    assert fetcher.entered.wait(5)

    scheduler.stop()
    result = scheduler.wait_idle(timeout=5)
    fetcher.gate.set()

    assert result is None
    assert scheduler.state is SchedulerState.STOPPED
    assert scheduler.stop_reason == "stopped"
    assert emitter.records == []
    assert scheduler.cycle.baseline.balances_table == {"AZE-t": "100"}
    assert scheduler.tick() is False


def test_session_loss_at_tick_stops_scheduler(make_scheduler, guard, fetcher):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)
    guard.revoke("u1")

    assert scheduler.tick() is False

    assert scheduler.state is SchedulerState.STOPPED
    assert scheduler.stop_reason == "session_revoked"
    assert fetcher.calls == 1


def test_source_rejecting_credentials_stops_scheduler(make_scheduler, fetcher):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)
    fetcher.error = SourceAuthorizationError("401")

    scheduler.tick()
    scheduler.wait_idle(timeout=5)

    assert scheduler.state is SchedulerState.STOPPED
    assert scheduler.stop_reason == "unauthenticated"


def test_session_revoked_signal_and_restart(make_scheduler):
    scheduler = make_scheduler()
    scheduler.start(IDENTITY)

    scheduler.on_session_revoked()
    assert scheduler.state is SchedulerState.STOPPED

    report = scheduler.start(IDENTITY)
    assert scheduler.state is SchedulerState.RUNNING
    assert report is not None


def test_registry_keeps_one_scheduler_per_pair(make_scheduler):
    registry = SchedulerRegistry(make_scheduler)
    mainnet = Identity("u1", "0xabc", Network.MAINNET)

    registry.ensure_started(IDENTITY)
    registry.ensure_started(IDENTITY)
    registry.ensure_started(mainnet)

    assert len(registry) == 2
    first = registry.get("u1", Network.TESTNET)
    registry.ensure_started(IDENTITY)
    assert registry.get("u1", Network.TESTNET) is first

    assert registry.revoke_user("u1") == 2
    assert first.state is SchedulerState.STOPPED
    assert registry.get("u1", Network.MAINNET).state is SchedulerState.STOPPED

    registry.ensure_started(IDENTITY)
    assert first.state is SchedulerState.RUNNING

    registry.stop_all()
    assert len(registry) == 0
    assert first.state is SchedulerState.STOPPED


def test_registry_stop_unknown_pair(make_scheduler):
    registry = SchedulerRegistry(make_scheduler)

    assert registry.stop("ghost", Network.MAINNET) is False
