"""
Progress observers.

The fetch loops report ``on_progress(pages_done, events_done)`` and nothing
else; where that goes (log lines, metadata heartbeat) is up to the observer.
"""

import logging
import time
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class ProgressObserver:
    """Base observer; ignores everything."""

    def on_progress(self, pages_done: int, events_done: int):
        pass


class LoggingProgressObserver(ProgressObserver):
    def __init__(self, label: str = "fetch", every_pages: int = 10):
        self.label = label
        self.every_pages = max(1, every_pages)

    def on_progress(self, pages_done: int, events_done: int):
        if pages_done % self.every_pages == 0:
            logger.info(f"[{self.label}] {pages_done} pages, {events_done} events")


class MetadataProgressObserver(ProgressObserver):
    """Writes processed counts to the snapshot row, which doubles as the run heartbeat."""

    def __init__(self, metadata_store, snapshot_id: str, min_interval_seconds: float = 5.0):
        self.metadata_store = metadata_store
        self.snapshot_id = snapshot_id
        self.min_interval_seconds = min_interval_seconds
        self._last_write: Optional[float] = None

    def on_progress(self, pages_done: int, events_done: int):
        now = time.monotonic()
        if self._last_write is not None and now - self._last_write < self.min_interval_seconds:
            return
        self._last_write = now
        self.metadata_store.update_snapshot(
            self.snapshot_id,
            processed_pages=pages_done,
            processed_events=events_done,
        )


class CompositeProgressObserver(ProgressObserver):
    def __init__(self, observers: Iterable[ProgressObserver]):
        self.observers = list(observers)

    def on_progress(self, pages_done: int, events_done: int):
        for observer in self.observers:
            observer.on_progress(pages_done, events_done)
