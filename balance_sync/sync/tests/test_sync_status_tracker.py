from datetime import datetime, timezone

import pytest

from balance_sync.core.time.frozen_time_source import FrozenTimeSource
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.domain.network import Network
from balance_sync.sync.services.sync_status_tracker import SyncStatusTracker
from balance_sync.sync.store.cache_keys import balance_key
from balance_sync.sync.store.in_memory_shared_cache import InMemorySharedCache

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# --- Mocks ---

class DownCache(InMemorySharedCache):
    def get(self, key):
        raise CacheError("down")

    def set(self, key, value, ttl_seconds):
        raise CacheError("down")

    def delete(self, key):
        raise CacheError("down")


# --- Fixtures ---

@pytest.fixture
def clock():
    return FrozenTimeSource(NOW)


@pytest.fixture
def cache(clock):
    return InMemorySharedCache(time_source=clock)


def snap(table):
    return BalanceSnapshot(
        user_id="u1",
        network=Network.TESTNET,
        address="0xABC",
        balances_table=table,
        captured_at=NOW,
    )


# --- Tests ---

def test_unknown_status_before_any_sync(cache, clock):
    tracker = SyncStatusTracker(cache, time_source=clock)

    status = tracker.get_status("u1", Network.TESTNET, "0xabc")

    assert status["status"] == "unknown"
    assert status["has_cache"] is False
    assert status["cache_timestamp"] is None


def test_record_sync_and_history_limit(cache, clock):
    tracker = SyncStatusTracker(cache, max_history=100, time_source=clock)
    for i in range(5):
        tracker.record_sync("u1", "0xABC", snap({"AZE": str(i)}), source="live")

    history = tracker.get_history("u1", Network.TESTNET, "0xabc", limit=3)

    assert len(history) == 3
    assert history[0]["balances"] == {"AZE": "4"}
    assert history[0]["action"] == "update"
    assert tracker.get_status("u1", Network.TESTNET, "0xabc")["last_sync"] == NOW.isoformat()


def test_history_is_capped(cache, clock):
    tracker = SyncStatusTracker(cache, max_history=3, time_source=clock)
    for i in range(10):
        tracker.record_sync("u1", "0xabc", snap({"AZE": str(i)}), source="live")

    assert len(tracker.get_history("u1", Network.TESTNET, "0xabc", limit=50)) == 3


def test_status_reports_cache_timestamp(cache, clock):
    tracker = SyncStatusTracker(cache, time_source=clock)
    cache.set(balance_key("u1", Network.TESTNET, "0xabc"), snap({"AZE": "1"}).to_dict(), 300)

    status = tracker.get_status("u1", Network.TESTNET, "0xabc")

    assert status["has_cache"] is True
    assert status["cache_timestamp"] == NOW.isoformat()


def test_clear_removes_everything(cache, clock):
    tracker = SyncStatusTracker(cache, time_source=clock)
    cache.set(balance_key("u1", Network.TESTNET, "0xabc"), snap({"AZE": "1"}).to_dict(), 300)
    tracker.record_sync("u1", "0xabc", snap({"AZE": "1"}), source="live")

    assert tracker.clear("u1", Network.TESTNET, "0xabc") is True
    assert cache.keys() == []


def test_errors_degrade_to_empty_results(clock):
    tracker = SyncStatusTracker(DownCache(time_source=clock), time_source=clock)

    tracker.record_sync("u1", "0xabc", snap({"AZE": "1"}), source="live")

    assert tracker.get_history("u1", Network.TESTNET, "0xabc") == []
    assert tracker.get_status("u1", Network.TESTNET, "0xabc")["status"] == "unknown"
    assert tracker.clear("u1", Network.TESTNET, "0xabc") is False
