import logging
from dataclasses import replace
from typing import List, Optional, Set

from balance_sync.core.concurrency.cancellation import CancellationToken
from balance_sync.core.logging.structured_runtime_logger import StructuredRuntimeLogger
from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.change_event import ChangeEvent
from balance_sync.sync.domain.cycle_report import CycleReport
from balance_sync.sync.domain.exceptions import CycleCancelledError
from balance_sync.sync.domain.identity import Identity
from balance_sync.sync.domain.network import Provenance
from balance_sync.sync.interfaces.notification_deduplicator import NotificationDeduplicator
from balance_sync.sync.interfaces.notification_emitter import NotificationEmitter
from balance_sync.sync.services.balance_source_resolver import BalanceSourceResolver
from balance_sync.sync.services.change_detector import ChangeDetector
from balance_sync.sync.services.notification_formatter import NotificationFormatter

logger = logging.getLogger(__name__)


class BalanceSyncCycle:
    """
    One resolve -> detect -> dedupe/emit pass for a single (user, network).

    Owns the detection baseline: the last live snapshot of a completed cycle,
    plus every token ever seen live. Fallback snapshots never touch either.
    """

    def __init__(
        self,
        resolver: BalanceSourceResolver,
        detector: ChangeDetector,
        deduplicator: NotificationDeduplicator,
        emitter: NotificationEmitter,
        formatter: Optional[NotificationFormatter] = None,
        runtime_logger: Optional[StructuredRuntimeLogger] = None,
    ):
        self.resolver = resolver
        self.detector = detector
        self.deduplicator = deduplicator
        self.emitter = emitter
        self.formatter = formatter or NotificationFormatter()
        self.runtime_logger = runtime_logger or StructuredRuntimeLogger()
        self._baseline: Optional[BalanceSnapshot] = None
        self._seen_tokens: Set[str] = set()
        self._offline_pending = False

    @property
    def baseline(self) -> Optional[BalanceSnapshot]:
        return self._baseline

    @property
    def seen_tokens(self) -> Set[str]:
        return set(self._seen_tokens)

    def seed_baseline(self, snapshot: BalanceSnapshot) -> bool:
        """
        Primes the baseline with a live snapshot captured in an earlier session,
        so changes made while the user was away are reported on the next cycle.
        """
        if snapshot.provenance is not Provenance.LIVE or snapshot.is_empty:
            return False
        if self._baseline is not None:
            return False
        self._baseline = snapshot
        self._seen_tokens.update(snapshot.balances_table)
        self._offline_pending = True
        return True

    def run(self, identity: Identity, cancel_token: Optional[CancellationToken] = None) -> CycleReport:
        cancel_token = cancel_token or CancellationToken()
        resolved = self.resolver.resolve(
            identity.user_id,
            identity.address,
            identity.network,
            cancel_token=cancel_token,
        )
        self._raise_if_cancelled(cancel_token)

        snapshot = resolved.snapshot
        events: List[ChangeEvent] = []
        emitted: List[ChangeEvent] = []
        suppressed: List[ChangeEvent] = []
        failed: List[ChangeEvent] = []

        if resolved.provenance is Provenance.LIVE:
            seen = self._seen_tokens if self._baseline is not None else None
            events = self.detector.detect(snapshot, self._baseline, seen_tokens=seen)

            for event in events:
                self._raise_if_cancelled(cancel_token)
                if not self.deduplicator.should_emit(event):
                    suppressed.append(event)
                    continue
                if self._emit(identity, event):
                    emitted.append(event)
                else:
                    failed.append(event)

            self._raise_if_cancelled(cancel_token)
            self._advance_baseline(snapshot, failed)

        self.runtime_logger.emit(
            "sync.cycle.completed",
            user_id=identity.user_id,
            network=identity.network.value,
            provenance=resolved.provenance.value,
            stale=resolved.stale,
            failures=[f.tier for f in resolved.failures],
            events=len(events),
            emitted=len(emitted),
            suppressed=len(suppressed),
        )
        return CycleReport(
            provenance=resolved.provenance,
            snapshot=snapshot,
            stale=resolved.stale,
            events=events,
            emitted=emitted,
            suppressed=suppressed,
            reconcile=resolved.reconcile,
        )

    def _emit(self, identity: Identity, event: ChangeEvent) -> bool:
        title, message, metadata = self.formatter.format(event, identity.network, offline=self._offline_pending)
        try:
            self.emitter.emit(identity.user_id, title, message, metadata)
        except Exception as e:
            # Not marked, so the next cycle retries it.
            logger.error(f"Failed to emit {event.signature} for {identity.user_id}: {e}")
            return False
        self.deduplicator.mark_emitted(event)
        return True

    def _raise_if_cancelled(self, cancel_token: CancellationToken) -> None:
        if cancel_token.is_cancelled:
            raise CycleCancelledError(cancel_token.reason or "cancelled")

    def _advance_baseline(self, snapshot: BalanceSnapshot, failed: List[ChangeEvent]) -> None:
        """
        Moves the baseline to the new live snapshot, except for tokens whose
        notification failed; those keep their old value so the change is
        detected again next cycle.
        """
        table = dict(snapshot.balances_table)
        previous = self._baseline.balances_table if self._baseline is not None else {}
        for event in failed:
            if event.token in previous:
                table[event.token] = previous[event.token]
            else:
                table.pop(event.token, None)
        self._baseline = replace(snapshot, balances_table=table)
        self._seen_tokens.update(table)
        self._offline_pending = False
