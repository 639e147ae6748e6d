"""
Tests for bounded scheduling and cancellation.
"""

import threading
import time

import pytest

from acs_sync.concurrency import BoundedScheduler, CancellationToken
from acs_sync.errors import SyncCancelled


class InFlightCounter:
    def __init__(self):
        self.current = 0
        self.peak = 0
        self.lock = threading.Lock()

    def __call__(self, item):
        with self.lock:
            self.current += 1
            self.peak = max(self.peak, self.current)
        time.sleep(0.01 * (item % 3))
        with self.lock:
            self.current -= 1
        return item * 2


class TestBoundedScheduler:
    """Tests for BoundedScheduler."""

    def test_ordered_results(self):
        scheduler = BoundedScheduler(max_concurrency=4)
        assert list(scheduler.imap(InFlightCounter(), range(20))) == [i * 2 for i in range(20)]

    def test_unordered_results_complete(self):
        scheduler = BoundedScheduler(max_concurrency=4)
        assert sorted(scheduler.imap(InFlightCounter(), range(10), ordered=False)) == [i * 2 for i in range(10)]

    def test_concurrency_is_bounded(self):
        counter = InFlightCounter()
        list(BoundedScheduler(max_concurrency=3).imap(counter, range(30)))
        assert 1 <= counter.peak <= 3

    def test_task_error_propagates(self):
        def fail_on_five(item):
            if item == 5:
                raise ValueError("boom")
            return item

        with pytest.raises(ValueError):
            list(BoundedScheduler(max_concurrency=2).imap(fail_on_five, range(10)))

    def test_cancellation_stops_admission(self):
        token = CancellationToken()
        started = []

        def task(item):
            started.append(item)
            if item == 0:
                token.cancel('test')
            return item

        results = []
        with pytest.raises(SyncCancelled):
            for result in BoundedScheduler(max_concurrency=1, cancel_token=token).imap(task, range(10)):
                results.append(result)
        assert results == [0]
        assert started == [0]

    def test_cancellation_after_input_exhausted_completes(self):
        """Work already admitted in full is not reported as cancelled."""
        token = CancellationToken()
        drained = threading.Event()

        def items():
            yield 0
            yield 1
            drained.set()

        def task(item):
            drained.wait(timeout=5)
            token.cancel('late')
            return item

        scheduler = BoundedScheduler(max_concurrency=3, cancel_token=token)
        assert list(scheduler.imap(task, items())) == [0, 1]

    def test_run_all_preserves_order(self):
        tasks = [lambda i=i: i * i for i in range(5)]
        assert BoundedScheduler(max_concurrency=2).run_all(tasks) == [0, 1, 4, 9, 16]

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            BoundedScheduler(max_concurrency=0)


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_first_reason_kept(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel('first')
        token.cancel('second')
        assert token.cancelled
        assert token.reason == 'first'

    def test_signal_handlers_restored(self):
        import signal

        before = signal.getsignal(signal.SIGTERM)
        token = CancellationToken()
        restore = token.install_signal_handlers(signals=(signal.SIGTERM,))
        assert signal.getsignal(signal.SIGTERM) is not before
        restore()
        assert signal.getsignal(signal.SIGTERM) == before
