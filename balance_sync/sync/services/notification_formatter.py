from typing import Any, Dict, Tuple

from balance_sync.sync.domain.balance_math import format_balance
from balance_sync.sync.domain.change_event import ChangeEvent, ChangeType
from balance_sync.sync.domain.network import Network

OFFLINE_PREFIX = "Detected at login: "

NOTIFICATION_TYPES = {
    ChangeType.INCREASE: "balance_increase",
    ChangeType.DECREASE: "balance_decrease",
    ChangeType.NEW_TOKEN: "new_token",
}


class NotificationFormatter:
    """
    Renders a change event as notification text.
    offline=True marks changes that happened while the user was away.
    """

    def format(
        self,
        event: ChangeEvent,
        network: Network,
        offline: bool = False,
    ) -> Tuple[str, str, Dict[str, Any]]:
        label = network.label
        token = event.token
        new_balance = format_balance(event.new_balance)
        change = format_balance(abs(event.difference))

        if event.type is ChangeType.INCREASE:
            title = f"Balance increased - {token} ({label})"
            message = f"Your {token} balance increased by {change} on {label}. New balance: {new_balance}"
        elif event.type is ChangeType.DECREASE:
            title = f"Balance decreased - {token} ({label})"
            message = f"Your {token} balance decreased by {change} on {label}. New balance: {new_balance}"
        else:
            title = f"New token received - {token} ({label})"
            message = f"You received {new_balance} {token} in your wallet on {label}"

        if offline:
            message = OFFLINE_PREFIX + message[0].lower() + message[1:]

        metadata = {
            "token": token,
            "change": format_balance(event.difference),
            "new_balance": new_balance,
            "change_type": event.type.value,
            "notification_type": NOTIFICATION_TYPES[event.type],
            "network": network.value,
            "network_label": label,
        }
        return title, message, metadata
