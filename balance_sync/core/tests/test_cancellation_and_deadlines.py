import threading
import time

import pytest

from balance_sync.core.concurrency.cancellation import CancellationToken, OperationCancelledError
from balance_sync.core.concurrency.deadline_runner import DeadlineExceededError, DeadlineRunner


# --- Fixtures ---

@pytest.fixture
def runner():
    r = DeadlineRunner(max_workers=2, poll_interval_seconds=0.01)
    yield r
    r.shutdown()


# --- Tests ---

def test_cancel_fires_callbacks_once():
    token = CancellationToken()
    calls = []
    token.add_callback(calls.append)

    token.cancel("stopped")
    token.cancel("again")

    assert token.is_cancelled
    assert token.reason == "stopped"
    assert calls == ["stopped"]


def test_callback_added_after_cancel_runs_immediately():
    token = CancellationToken()
    token.cancel("session_revoked")
    calls = []

    token.add_callback(calls.append)

    assert calls == ["session_revoked"]


def test_raise_if_cancelled():
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel()

    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()


def test_runner_returns_result(runner):
    assert runner.run(lambda a, b: a + b, 2, 3, timeout_seconds=1.0) == 5


def test_runner_propagates_errors(runner):
    def boom():
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        runner.run(boom, timeout_seconds=1.0)


def test_runner_times_out(runner):
    release = threading.Event()

    with pytest.raises(DeadlineExceededError):
        runner.run(release.wait, 5, timeout_seconds=0.05)
    release.set()


def test_runner_stops_waiting_when_cancelled(runner):
    token = CancellationToken()
    release = threading.Event()
    threading.Timer(0.05, token.cancel, args=("stopped",)).start()

    started = time.monotonic()
    with pytest.raises(OperationCancelledError):
        runner.run(release.wait, 5, timeout_seconds=5.0, cancel_token=token)
    release.set()

    assert time.monotonic() - started < 2.0


def test_runner_refuses_to_start_when_already_cancelled(runner):
    token = CancellationToken()
    token.cancel()
    calls = []

    with pytest.raises(OperationCancelledError):
        runner.run(calls.append, 1, timeout_seconds=1.0, cancel_token=token)

    assert calls == []


def test_runner_withdraws_call_that_never_got_a_worker(runner):
    release = threading.Event()
    for _ in range(2):
        with pytest.raises(DeadlineExceededError):
            runner.run(release.wait, 5, timeout_seconds=0.05)
    calls = []

    with pytest.raises(DeadlineExceededError, match="free worker"):
        runner.run(calls.append, 1, timeout_seconds=0.05)
    release.set()

    assert runner.run(lambda: "ok", timeout_seconds=1.0) == "ok"
    assert calls == []
