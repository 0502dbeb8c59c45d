from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from balance_sync.sync.domain.balance_math import format_balance


class ChangeType(Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    NEW_TOKEN = "new_token"


@dataclass(frozen=True)
class ChangeEvent:
    token: str
    previous_balance: Decimal
    new_balance: Decimal
    difference: Decimal
    type: ChangeType
    detected_at: datetime

    @property
    def signature(self) -> str:
        return "_".join(
            (
                self.token,
                self.type.value,
                format_balance(self.difference),
                format_balance(self.new_balance),
            )
        )
