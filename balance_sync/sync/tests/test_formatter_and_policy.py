from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from balance_sync.sync.adapters.tier_policy_table import TierPolicyTable
from balance_sync.sync.domain.change_event import ChangeEvent, ChangeType
from balance_sync.sync.domain.identity import SubscriptionTier
from balance_sync.sync.domain.network import Network
from balance_sync.sync.services.notification_formatter import NotificationFormatter

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def event(kind, previous, new):
    return ChangeEvent(
        token="cBRL",
        previous_balance=Decimal(previous),
        new_balance=Decimal(new),
        difference=Decimal(new) - Decimal(previous),
        type=kind,
        detected_at=NOW,
    )


# --- Tests ---

def test_decrease_message_uses_absolute_change_and_network_label():
    title, message, metadata = NotificationFormatter().format(event(ChangeType.DECREASE, "50", "45"), Network.MAINNET)

    assert title == "Balance decreased - cBRL (Mainnet)"
    assert message == "Your cBRL balance decreased by 5.000000 on Mainnet. New balance: 45.000000"
    assert metadata == {
        "token": "cBRL",
        "change": "-5.000000",
        "new_balance": "45.000000",
        "change_type": "decrease",
        "notification_type": "balance_decrease",
        "network": "mainnet",
        "network_label": "Mainnet",
    }


def test_new_token_and_offline_wording():
    title, message, _ = NotificationFormatter().format(
        event(ChangeType.NEW_TOKEN, "0", "25"), Network.TESTNET, offline=True
    )

    assert title == "New token received - cBRL (Testnet)"
    assert message == "Detected at login: you received 25.000000 cBRL in your wallet on Testnet"


def test_increase_title():
    title, _, metadata = NotificationFormatter().format(event(ChangeType.INCREASE, "1", "2"), Network.TESTNET)

    assert title == "Balance increased - cBRL (Testnet)"
    assert metadata["change"] == "1.000000"


def test_policy_table_defaults():
    table = TierPolicyTable()

    assert table.tick_interval(SubscriptionTier.BASIC) == timedelta(minutes=5)
    assert table.tick_interval(SubscriptionTier.PRO) == timedelta(minutes=2)
    assert table.tick_interval(SubscriptionTier.PREMIUM) == timedelta(minutes=1)


def test_policy_table_is_configurable_and_falls_back_to_basic():
    table = TierPolicyTable({"basic": 600, "premium": 30, "enterprise": 5})

    assert table.tick_interval(SubscriptionTier.PREMIUM) == timedelta(seconds=30)
    assert table.tick_interval(SubscriptionTier.PRO) == timedelta(seconds=600)


def test_policy_table_rejects_non_positive_intervals():
    with pytest.raises(ValueError):
        TierPolicyTable({"basic": 0})
