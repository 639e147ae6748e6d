"""
Bounded concurrency and cooperative cancellation.

The scheduler is plain admission control: at most ``max_concurrency`` tasks
are in flight, and when the pool is saturated it waits for any one of them to
finish before admitting the next.
"""

import logging
import signal
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from .errors import SyncCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class CancellationToken:
    """Run-level cancellation flag, checked at loop boundaries."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = 'cancelled'):
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"Cancellation requested: {reason}")
        self._event.set()

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)) -> Callable[[], None]:
        """
        Turn SIGINT/SIGTERM into a cancellation request.

        In-flight requests are not aborted. Returns a callable restoring the
        previous handlers. Outside the main thread this is a no-op.
        """
        if threading.current_thread() is not threading.main_thread():
            return lambda: None

        previous = {}

        def _handler(signum, frame):
            self.cancel(f"received signal {signal.Signals(signum).name}")

        for sig in signals:
            previous[sig] = signal.signal(sig, _handler)

        def _restore():
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return _restore


class BoundedScheduler:
    """Runs I/O-bound tasks on a thread pool with a fixed admission window."""

    def __init__(self, max_concurrency: int = 6, cancel_token: Optional[CancellationToken] = None):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.cancel_token = cancel_token

    def imap(
        self,
        fn: Callable[[T], R],
        items: Iterable[T],
        ordered: bool = True
    ) -> Iterator[R]:
        """
        Apply ``fn`` to every item with at most ``max_concurrency`` calls in flight.

        With ``ordered=True`` results are yielded in input order and completed
        results waiting for an earlier one count against the window, so memory
        stays bounded. A task exception propagates to the consumer; tasks
        already running are allowed to finish.

        Raises:
            SyncCancelled: cancellation stopped admission before the input was
                exhausted; results already in flight are yielded first
        """
        window = self.max_concurrency
        source = enumerate(items)
        exhausted = False
        cancelled = False
        pending: Dict[Future, int] = {}
        buffered: Dict[int, R] = {}
        next_index = 0

        executor = ThreadPoolExecutor(max_workers=window)
        try:
            while True:
                while not exhausted and len(pending) + len(buffered) < window:
                    if self.cancel_token is not None and self.cancel_token.cancelled:
                        exhausted = cancelled = True
                        break
                    try:
                        index, item = next(source)
                    except StopIteration:
                        exhausted = True
                        break
                    pending[executor.submit(fn, item)] = index

                if not pending:
                    if cancelled:
                        raise SyncCancelled()
                    break

                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    result = future.result()
                    if ordered:
                        buffered[index] = result
                    else:
                        yield result

                if ordered:
                    while next_index in buffered:
                        yield buffered.pop(next_index)
                        next_index += 1
        finally:
            executor.shutdown(wait=True)

    def run_all(self, tasks: Iterable[Callable[[], R]]) -> List[R]:
        """Run zero-argument callables and return their results in submission order."""
        return list(self.imap(lambda task: task(), tasks, ordered=True))
