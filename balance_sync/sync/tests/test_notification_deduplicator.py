from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from balance_sync.core.time.frozen_time_source import FrozenTimeSource
from balance_sync.sync.domain.change_event import ChangeEvent, ChangeType
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.domain.network import Network
from balance_sync.sync.services.notification_deduplicator import (
    InMemoryNotificationDeduplicator,
    SharedCacheNotificationDeduplicator,
)
from balance_sync.sync.store.in_memory_shared_cache import InMemorySharedCache

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def event(token="cBRL", difference="-5", new_balance="45", kind=ChangeType.DECREASE):
    return ChangeEvent(
        token=token,
        previous_balance=Decimal(new_balance) - Decimal(difference),
        new_balance=Decimal(new_balance),
        difference=Decimal(difference),
        type=kind,
        detected_at=NOW,
    )


# --- Mocks ---

class BrokenCache(InMemorySharedCache):
    def get(self, key):
        raise CacheError("redis down")

    def set(self, key, value, ttl_seconds):
        raise CacheError("redis down")


# --- Fixtures ---

@pytest.fixture
def clock():
    return FrozenTimeSource(NOW)


@pytest.fixture(params=["memory", "shared"])
def dedup(request, clock):
    if request.param == "memory":
        return InMemoryNotificationDeduplicator(window_seconds=3600, max_signatures=3, time_source=clock)
    cache = InMemorySharedCache(time_source=clock)
    return SharedCacheNotificationDeduplicator(
        cache, "u1", Network.TESTNET, window_seconds=3600, max_signatures=3, time_source=clock
    )


# --- Tests ---

def test_should_emit_is_idempotent_until_marked(dedup):
    e = event()

    assert dedup.should_emit(e) is True
    assert dedup.should_emit(e) is True

    dedup.mark_emitted(e)

    assert dedup.should_emit(e) is False
    assert dedup.should_emit(event()) is False


def test_different_signature_same_token_still_emits(dedup):
    dedup.mark_emitted(event())

    assert dedup.should_emit(event(difference="-10", new_balance="35")) is True
    assert dedup.should_emit(event(token="AZE")) is True


def test_bucket_expires_after_window(dedup, clock):
    e = event()
    dedup.mark_emitted(e)

    clock.advance(timedelta(minutes=59))
    assert dedup.should_emit(e) is False

    clock.advance(timedelta(minutes=2))
    assert dedup.should_emit(e) is True


def test_marking_refreshes_whole_bucket(dedup, clock):
    first = event()
    dedup.mark_emitted(first)
    clock.advance(timedelta(minutes=50))
    dedup.mark_emitted(event(difference="-10", new_balance="35"))
    clock.advance(timedelta(minutes=50))

    assert dedup.should_emit(first) is False


def test_bucket_keeps_only_newest_signatures(dedup):
    events = [event(difference=f"-{i}", new_balance=f"{50 - i}") for i in range(1, 5)]
    for e in events:
        dedup.mark_emitted(e)

    assert dedup.should_emit(events[0]) is True
    assert all(dedup.should_emit(e) is False for e in events[1:])


def test_shared_dedup_fails_open_on_cache_errors(clock):
    dedup = SharedCacheNotificationDeduplicator(BrokenCache(time_source=clock), "u1", Network.MAINNET, time_source=clock)
    e = event()

    dedup.mark_emitted(e)

    assert dedup.should_emit(e) is True


def test_shared_dedup_is_visible_across_instances(clock):
    cache = InMemorySharedCache(time_source=clock)
    first = SharedCacheNotificationDeduplicator(cache, "u1", Network.TESTNET, time_source=clock)
    second = SharedCacheNotificationDeduplicator(cache, "u1", Network.TESTNET, time_source=clock)
    other_network = SharedCacheNotificationDeduplicator(cache, "u1", Network.MAINNET, time_source=clock)

    first.mark_emitted(event())

    assert second.should_emit(event()) is False
    assert other_network.should_emit(event()) is True
