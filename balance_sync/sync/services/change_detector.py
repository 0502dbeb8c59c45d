import logging
from decimal import Decimal
from typing import AbstractSet, Iterable, List, Optional

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.balance_math import ZERO, parse_balance, quantize
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.change_event import ChangeEvent, ChangeType
from balance_sync.sync.domain.exceptions import MalformedBalanceError
from balance_sync.sync.domain.network import Provenance

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER_TOKENS = ("AZE", "AZE-t", "cBRL", "STT")


class ChangeDetector:
    """
    Compares two live snapshots and reports meaningful balance movements.

    - Only live-vs-live comparisons produce events; any fallback snapshot on
      either side yields nothing.
    - Transitions to or from zero are never reported as increase/decrease.
    - A token goes from absent to positive as new_token only if it was never
      seen in an earlier live snapshot and is not a placeholder symbol.
    """

    def __init__(
        self,
        threshold: Decimal = Decimal("0.01"),
        min_absolute_change: Decimal = ZERO,
        placeholder_tokens: Iterable[str] = DEFAULT_PLACEHOLDER_TOKENS,
        time_source: Optional[TimeSource] = None,
    ):
        self.threshold = Decimal(str(threshold))
        self.min_absolute_change = Decimal(str(min_absolute_change))
        self.placeholder_tokens = frozenset(placeholder_tokens)
        self.time_source = time_source or SystemTimeSource()

    def detect(
        self,
        new_snapshot: BalanceSnapshot,
        baseline_snapshot: Optional[BalanceSnapshot],
        seen_tokens: Optional[AbstractSet[str]] = None,
    ) -> List[ChangeEvent]:
        if new_snapshot.provenance is not Provenance.LIVE:
            return []
        if baseline_snapshot is None or baseline_snapshot.is_empty:
            return []
        if baseline_snapshot.provenance is not Provenance.LIVE:
            return []

        seen = set(baseline_snapshot.balances_table) if seen_tokens is None else set(seen_tokens)
        detected_at = self.time_source.now()
        events: List[ChangeEvent] = []

        for token, raw_new in new_snapshot.balances_table.items():
            try:
                new = quantize(parse_balance(raw_new))
                raw_prev = baseline_snapshot.balances_table.get(token)
                prev = ZERO if raw_prev is None else quantize(parse_balance(raw_prev))
            except MalformedBalanceError as e:
                logger.warning(f"Dropping {token} from comparison for {new_snapshot.user_id}: {e}")
                continue

            event = self._classify(token, prev, new, seen, detected_at)
            if event is not None:
                events.append(event)

        return events

    def _classify(self, token, prev: Decimal, new: Decimal, seen, detected_at) -> Optional[ChangeEvent]:
        if prev > ZERO and new > ZERO:
            delta = new - prev
            if delta == ZERO:
                return None
            if abs(delta) / prev < self.threshold:
                return None
            if self.min_absolute_change > ZERO and abs(delta) < self.min_absolute_change:
                return None
            return ChangeEvent(
                token=token,
                previous_balance=prev,
                new_balance=new,
                difference=quantize(delta),
                type=ChangeType.INCREASE if delta > ZERO else ChangeType.DECREASE,
                detected_at=detected_at,
            )

        if prev == ZERO and new > ZERO:
            if token in self.placeholder_tokens or token in seen:
                return None
            return ChangeEvent(
                token=token,
                previous_balance=ZERO,
                new_balance=new,
                difference=new,
                type=ChangeType.NEW_TOKEN,
                detected_at=detected_at,
            )

        return None
