import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional

from balance_sync.core.concurrency.cancellation import CancellationToken
from balance_sync.core.logging.structured_runtime_logger import StructuredRuntimeLogger
from balance_sync.sync.domain.cycle_report import CycleReport
from balance_sync.sync.domain.exceptions import AuthorizationError, CycleCancelledError
from balance_sync.sync.domain.identity import Identity
from balance_sync.sync.interfaces.policy_table import PolicyTable
from balance_sync.sync.interfaces.session_guard import SessionGuard
from balance_sync.sync.services.balance_sync_cycle import BalanceSyncCycle

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class SyncScheduler:
    """
    Drives BalanceSyncCycle for one (user, network) on the tier cadence.

    A timer thread produces ticks; cycles run on a single worker so at most
    one is in flight. A tick that finds a cycle still running is skipped.
    Losing authentication stops the scheduler and cancels the running cycle.
    """

    def __init__(
        self,
        cycle: BalanceSyncCycle,
        session_guard: SessionGuard,
        policy_table: PolicyTable,
        runtime_logger: Optional[StructuredRuntimeLogger] = None,
        on_report: Optional[Callable[[CycleReport], None]] = None,
    ):
        self.cycle = cycle
        self.session_guard = session_guard
        self.policy_table = policy_table
        self.runtime_logger = runtime_logger or StructuredRuntimeLogger()
        self.on_report = on_report

        self.state = SchedulerState.IDLE
        self.identity: Optional[Identity] = None
        self.skipped_ticks = 0
        self.last_report: Optional[CycleReport] = None
        self.stop_reason: Optional[str] = None

        self._lock = threading.Lock()
        self._busy = threading.Lock()
        self._stop_event = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="balance-sync-cycle")
        self._inflight: Optional[Future] = None
        self._current_token: Optional[CancellationToken] = None

    def start(self, identity: Identity) -> Optional[CycleReport]:
        """
        Runs one cycle immediately, then keeps polling in the background.
        Returns the immediate cycle's report, or None if it did not complete.
        """
        if not self.session_guard.is_authenticated(identity.user_id):
            raise AuthorizationError(f"user {identity.user_id} is not authenticated")

        with self._lock:
            if self.state is SchedulerState.RUNNING:
                return self.last_report
            self.identity = identity
            self.state = SchedulerState.RUNNING
            self.stop_reason = None
            self._stop_event = threading.Event()

        self._busy.acquire()
        report = self._run_cycle()

        with self._lock:
            if self.state is not SchedulerState.RUNNING:
                return report
            interval = self.policy_table.tick_interval(identity.subscription_tier).total_seconds()
            self._loop_thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop_event, interval),
                name=f"balance-sync-{identity.pair_key}",
                daemon=True,
            )
            self._loop_thread.start()

        self.runtime_logger.emit(
            "scheduler.started",
            user_id=identity.user_id,
            network=identity.network.value,
            interval_seconds=interval,
        )
        return report

    def tick(self) -> bool:
        """Submits one cycle unless stopped or busy. Returns True if submitted."""
        if self.state is not SchedulerState.RUNNING:
            return False
        identity = self.identity
        if not self.session_guard.is_authenticated(identity.user_id):
            self._halt("session_revoked")
            return False
        if not self._busy.acquire(blocking=False):
            with self._lock:
                self.skipped_ticks += 1
                skipped = self.skipped_ticks
            self.runtime_logger.emit(
                "scheduler.tick.skipped",
                user_id=identity.user_id,
                network=identity.network.value,
                skipped_ticks=skipped,
            )
            return False
        self._inflight = self._executor.submit(self._run_cycle)
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> Optional[CycleReport]:
        """Blocks until the last submitted cycle finishes and returns its report."""
        inflight = self._inflight
        if inflight is None:
            return None
        return inflight.result(timeout=timeout)

    def stop(self) -> None:
        self._halt("stopped")
        thread = self._loop_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def on_session_revoked(self) -> None:
        self._halt("session_revoked")

    def shutdown(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False, cancel_futures=True)

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def _run_loop(self, stop_event: threading.Event, interval_seconds: float) -> None:
        while not stop_event.wait(interval_seconds):
            self.tick()

    def _run_cycle(self) -> Optional[CycleReport]:
        """Caller holds the busy lock; it is released here."""
        identity = self.identity
        token = CancellationToken()
        with self._lock:
            self._current_token = token
            if self.state is not SchedulerState.RUNNING:
                token.cancel(self.stop_reason or "stopped")
        try:
            report = self.cycle.run(identity, token)
        except AuthorizationError as e:
            logger.warning(f"Stopping sync for {identity.pair_key}: {e}")
            self._halt("unauthenticated")
            return None
        except CycleCancelledError as e:
            self.runtime_logger.emit(
                "sync.cycle.cancelled",
                user_id=identity.user_id,
                network=identity.network.value,
                reason=str(e),
            )
            return None
        except Exception as e:
            logger.exception(f"Sync cycle crashed for {identity.pair_key}: {e}")
            return None
        finally:
            with self._lock:
                self._current_token = None
            self._busy.release()

        self.last_report = report
        if self.on_report is not None:
            self.on_report(report)
        return report

    def _halt(self, reason: str) -> None:
        with self._lock:
            if self.state is not SchedulerState.RUNNING:
                return
            self.state = SchedulerState.STOPPED
            self.stop_reason = reason
            self._stop_event.set()
            token = self._current_token
        if token is not None:
            token.cancel(reason)
        identity = self.identity
        self.runtime_logger.emit(
            "scheduler.stopped",
            user_id=identity.user_id if identity else None,
            network=identity.network.value if identity else None,
            reason=reason,
        )
