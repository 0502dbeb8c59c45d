import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from balance_sync.core.concurrency.cancellation import CancellationToken, OperationCancelledError


class DeadlineExceededError(Exception):
    """Raised when a bounded call does not finish within its timeout."""
    pass


class DeadlineRunner:
    """
    Runs blocking calls on a small worker pool and waits for them with a hard
    deadline, waking up periodically to observe a cancellation token.

    The deadline counts from the moment a worker picks the call up. Time spent
    queued behind other calls is bounded by the same timeout; a call that never
    got a worker is withdrawn from the queue.

    A call that overruns is abandoned, not killed: its thread finishes in the
    background and its result is discarded.
    """

    def __init__(self, max_workers: int = 2, poll_interval_seconds: float = 0.05):
        self.poll_interval_seconds = poll_interval_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="balance-sync-io",
        )

    def run(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout_seconds: float,
        cancel_token: Optional[CancellationToken] = None,
        **kwargs: Any,
    ) -> Any:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        started = threading.Event()
        started_at = []

        def call():
            started_at.append(time.monotonic())
            started.set()
            return fn(*args, **kwargs)

        future = self._executor.submit(call)
        queue_deadline = time.monotonic() + timeout_seconds

        while True:
            if started.is_set():
                remaining = started_at[0] + timeout_seconds - time.monotonic()
            else:
                remaining = queue_deadline - time.monotonic()
                if remaining <= 0 and future.cancel():
                    raise DeadlineExceededError(f"call waited {timeout_seconds:.1f}s for a free worker")
                # Picked up just as the queue budget ran out.
                remaining = max(remaining, self.poll_interval_seconds)

            if remaining <= 0:
                raise DeadlineExceededError(f"call exceeded {timeout_seconds:.1f}s deadline")

            done, _ = wait([future], timeout=min(self.poll_interval_seconds, remaining), return_when=FIRST_COMPLETED)
            if done:
                return future.result()
            if cancel_token is not None and cancel_token.is_cancelled:
                future.cancel()
                raise OperationCancelledError(cancel_token.reason or "cancelled")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
