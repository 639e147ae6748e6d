"""
Full ACS snapshot fetcher.

Pages through /v0/state/acs at a fixed migration id and record time. Each
page moves the ``after`` cursor to the page's ``range.to`` (or offset plus
page length); a short or empty page ends the snapshot.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Set

from .canton_scan_client import SpliceScanClient
from .concurrency import CancellationToken
from .errors import PaginationLimitError, ScanApiError, StalledPaginationError, SyncCancelled
from .models import AcsCursor, ContractEvent, Epoch
from .progress import ProgressObserver

logger = logging.getLogger(__name__)


@dataclass
class AcsPage:
    """One fetched page, already de-duplicated."""
    number: int
    cursor_before: int
    cursor_after: int
    events: List[ContractEvent] = field(default_factory=list)
    duplicates: int = 0
    last: bool = False


class FullSnapshotFetcher:
    """
    Streams the complete ACS for one epoch.

    Error handling per page:
    - "range (X to Y)" in the error text: resume from offset X
    - transient transport/5xx: retried up to ``page_retries`` times with backoff
    - anything else: propagated
    """

    def __init__(
        self,
        client: SpliceScanClient,
        page_size: int = 1000,
        max_pages: int = 10000,
        page_retries: int = 3,
        api_delay_seconds: float = 0.0,
        cancel_token: Optional[CancellationToken] = None,
        observer: Optional[ProgressObserver] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.client = client
        self.page_size = page_size
        self.max_pages = max_pages
        self.page_retries = page_retries
        self.api_delay_seconds = api_delay_seconds
        self.cancel_token = cancel_token
        self.observer = observer or ProgressObserver()
        self._sleep = sleep

    def _request_page(self, epoch: Epoch, after: int):
        """
        Fetch one raw page, retrying transient failures.

        Returns:
            (response, None) on success or (None, resume_offset) for a range error
        """
        attempt = 0
        while True:
            try:
                return self.client.get_acs(
                    migration_id=epoch.migration_id,
                    record_time=epoch.record_time,
                    after=after,
                    page_size=self.page_size
                ), None
            except ScanApiError as e:
                resumable = e.resumable_range()
                if resumable:
                    logger.info(f"Detected snapshot range: {resumable[0]}-{resumable[1]}")
                    return None, resumable[0]
                if not e.is_transient or attempt >= self.page_retries:
                    raise
                attempt += 1
                delay = min(2 ** attempt, 30)
                logger.warning(f"Page at after={after} failed ({e}); retry {attempt}/{self.page_retries} in {delay}s")
                self._sleep(delay)

    def iter_pages(
        self,
        epoch: Epoch,
        start_after: int = 0,
        pages_done: int = 0,
        events_done: int = 0,
        seen: Optional[Set[str]] = None
    ) -> Iterator[AcsPage]:
        """
        Yield ACS pages until a short or empty page.

        ``pages_done``/``events_done`` continue the counters of a resumed run;
        the page ceiling applies to the total.

        Raises:
            StalledPaginationError: A page did not move the cursor forward, or a
                range error sent the cursor back to an offset that already failed
            PaginationLimitError: ``max_pages`` reached before the last page;
                range-error restarts count against the ceiling
            SyncCancelled: Cancellation was requested between pages
        """
        seen = seen if seen is not None else set()
        cursor = AcsCursor(start_after)
        # offsets that ended in a range error since the last successful page
        restart_offsets: Set[int] = set()
        logger.info(
            f"Fetching ACS for migration {epoch.migration_id} at {epoch.record_time} "
            f"from after={start_after}"
        )

        while True:
            if self.cancel_token is not None and self.cancel_token.cancelled:
                raise SyncCancelled(pages_done, events_done)
            if pages_done + len(restart_offsets) >= self.max_pages:
                raise PaginationLimitError(self.max_pages, cursor.after)

            data, resume_at = self._request_page(epoch, cursor.after)
            if data is None:
                restart_offsets.add(cursor.after)
                if resume_at in restart_offsets:
                    raise StalledPaginationError(resume_at, pages_done, events_done)
                logger.info(f"Restarting from offset {resume_at}")
                cursor = AcsCursor(resume_at)
                continue

            raw_events = data.get('created_events') or []
            if not raw_events:
                logger.info("No more events, finished")
                return

            range_to = (data.get('range') or {}).get('to')
            next_cursor = cursor.advance(len(raw_events), range_to)
            last = len(raw_events) < self.page_size
            if not last and next_cursor.after <= cursor.after:
                raise StalledPaginationError(cursor.after, pages_done, events_done)

            page = AcsPage(number=pages_done + 1, cursor_before=cursor.after, cursor_after=next_cursor.after, last=last)
            for raw in raw_events:
                event = ContractEvent.from_api(raw)
                key = event.contract_id or event.event_id
                if key and key in seen:
                    page.duplicates += 1
                    continue
                if key:
                    seen.add(key)
                page.events.append(event)

            restart_offsets.clear()
            pages_done += 1
            events_done += len(page.events)
            if page.duplicates:
                logger.debug(f"Page {page.number}: skipped {page.duplicates} duplicate contracts")
            self.observer.on_progress(pages_done, events_done)
            yield page

            if last:
                logger.info(f"Last page reached after {pages_done} pages ({events_done} contracts)")
                return
            cursor = next_cursor
            if self.api_delay_seconds:
                self._sleep(self.api_delay_seconds)

    def fetch_full_snapshot(self, epoch: Epoch, start_after: int = 0) -> Iterator[ContractEvent]:
        """Stream every unique contract of the snapshot."""
        for page in self.iter_pages(epoch, start_after=start_after):
            yield from page.events
