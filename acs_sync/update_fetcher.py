"""
Incremental update fetcher.

Pages through the update stream after a (migration_id, record_time) cursor
and classifies every event as a contract creation or archival.

Both update shapes are accepted:
- flat v2 items: {update_id, record_time, migration_id, events_by_id, root_event_ids}
  or {update_id, record_time, event: {...}} for reassignments
- wrapped items: {migration_id, record_time, update: {type, transaction|reassignment, events_by_id}}
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .canton_scan_client import SpliceScanClient
from .concurrency import CancellationToken
from .errors import ScanApiError, StalledPaginationError, SyncCancelled
from .models import ArchivedEvent, ContractEvent, LedgerUpdate, UpdateCursor, UpdateKind
from .progress import ProgressObserver

logger = logging.getLogger(__name__)

_EVENT_WRAPPERS = (
    ('created_event', 'created'),
    ('created', 'created'),
    ('archived_event', 'archived'),
    ('archived', 'archived'),
    ('exercised_event', 'exercised'),
    ('exercised', 'exercised'),
)


def classify_event(event: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    """Return ('created' | 'archived' | 'exercised' | None, event body)."""
    for key, kind in _EVENT_WRAPPERS:
        if isinstance(event.get(key), dict):
            return kind, event[key]

    event_type = event.get('event_type')
    if event_type in ('created_event', 'created'):
        return 'created', event
    if event_type in ('archived_event', 'archived'):
        return 'archived', event
    if event_type in ('exercised_event', 'exercised'):
        return 'exercised', event

    if 'create_arguments' in event:
        return 'created', event
    if 'choice' in event:
        return 'exercised', event
    if event.get('archived'):
        return 'archived', event
    return None, event


def _event_order(events_by_id: Dict[str, Any], root_ids: Optional[List[str]]) -> List[str]:
    """Pre-order walk of the event tree, then anything the walk did not reach."""
    ordered: List[str] = []
    visited = set()
    stack = list(reversed(root_ids or []))
    while stack:
        event_id = stack.pop()
        if event_id in visited or event_id not in events_by_id:
            continue
        visited.add(event_id)
        ordered.append(event_id)
        _, body = classify_event(events_by_id[event_id])
        children = body.get('child_event_ids') or []
        stack.extend(reversed(children))
    ordered.extend(event_id for event_id in events_by_id if event_id not in visited)
    return ordered


def parse_update(item: Dict[str, Any]) -> Optional[LedgerUpdate]:
    """Turn one raw update into a LedgerUpdate; None for unknown shapes."""
    wrapped = item.get('update') if isinstance(item.get('update'), dict) else None
    if wrapped is not None:
        update_type = wrapped.get('type')
        body = (wrapped.get(update_type) or {}) if update_type else {}
        events_by_id = wrapped.get('events_by_id') or body.get('events_by_id')
        reassignment_event = body.get('event') if update_type == 'reassignment' else None
        update_id = body.get('update_id') or item.get('update_id')
        root_ids = body.get('root_event_ids') or wrapped.get('root_event_ids')
    else:
        update_type = None
        events_by_id = item.get('events_by_id')
        reassignment_event = item.get('event')
        update_id = item.get('update_id')
        root_ids = item.get('root_event_ids')

    migration_id = item.get('migration_id')
    record_time = item.get('record_time')

    if isinstance(events_by_id, dict) and update_type != 'reassignment':
        update = LedgerUpdate(
            kind=UpdateKind.TRANSACTION,
            update_id=update_id,
            migration_id=migration_id,
            record_time=record_time,
            events_by_id=events_by_id,
            raw=item,
        )
        for event_id in _event_order(events_by_id, root_ids):
            kind, body = classify_event(events_by_id[event_id])
            if kind == 'created':
                contract = ContractEvent.from_api(body)
                contract.event_id = contract.event_id or event_id
                update.event_order.append(('created', len(update.created)))
                update.created.append(contract)
            elif kind in ('archived', 'exercised'):
                if kind == 'exercised':
                    update.exercised.append(body)
                    if not body.get('consuming'):
                        continue
                update.event_order.append(('archived', len(update.archived)))
                update.archived.append(ArchivedEvent(
                    contract_id=body.get('contract_id') or '',
                    template_id=body.get('template_id') or 'unknown',
                    event_id=body.get('event_id') or event_id,
                    choice=body.get('choice'),
                ))
            else:
                logger.debug(f"Unclassified event {event_id} in update {update_id}")
        return update

    if isinstance(reassignment_event, dict) or update_type == 'reassignment':
        update = LedgerUpdate(
            kind=UpdateKind.REASSIGNMENT,
            update_id=update_id,
            migration_id=migration_id,
            record_time=record_time,
            raw=item,
        )
        created = (reassignment_event or {}).get('created_event')
        # an unassign leaves the contract live on another synchronizer
        if isinstance(created, dict):
            update.event_order.append(('created', 0))
            update.created.append(ContractEvent.from_api(created))
        return update

    logger.warning(f"Skipping update with unrecognized shape: {sorted(item)}")
    return None


@dataclass
class UpdatePage:
    number: int
    updates: List[LedgerUpdate] = field(default_factory=list)
    cursor: Optional[UpdateCursor] = None


class IncrementalUpdateFetcher:
    """Streams ledger updates after a cursor until the stream is drained."""

    def __init__(
        self,
        client: SpliceScanClient,
        page_size: int = 500,
        max_pages: int = 1000,
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
        self.reached_page_limit = False

    def _request_page(self, cursor: UpdateCursor) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return self.client.get_updates(
                    after_migration_id=cursor.migration_id,
                    after_record_time=cursor.record_time,
                    page_size=self.page_size
                )
            except ScanApiError as e:
                if not e.is_transient or attempt >= self.page_retries:
                    raise
                attempt += 1
                delay = min(2 ** attempt, 30)
                logger.warning(f"Updates page failed ({e}); retry {attempt}/{self.page_retries} in {delay}s")
                self._sleep(delay)

    def iter_pages(self, cursor: UpdateCursor) -> Iterator[UpdatePage]:
        """
        Yield pages of parsed updates; each page carries the cursor after it.

        Stops on an empty page, or with ``reached_page_limit`` set after
        ``max_pages``.

        Raises:
            StalledPaginationError: A page ended at the cursor it started from
            SyncCancelled: Cancellation was requested between pages
        """
        self.reached_page_limit = False
        pages_done = 0
        updates_done = 0
        logger.info(
            f"Fetching updates after migration={cursor.migration_id} "
            f"record_time={cursor.record_time}"
        )

        while True:
            if self.cancel_token is not None and self.cancel_token.cancelled:
                raise SyncCancelled(pages_done, updates_done)
            if pages_done >= self.max_pages:
                logger.warning(f"Reached max update pages ({self.max_pages}); stopping at {cursor}")
                self.reached_page_limit = True
                return

            data = self._request_page(cursor)
            items = data.get('transactions')
            if items is None:
                items = data.get('updates') or []
            if not items:
                logger.info(f"Update stream drained after {pages_done} pages ({updates_done} updates)")
                return

            page = UpdatePage(number=pages_done + 1)
            for item in items:
                update = parse_update(item)
                if update is None:
                    continue
                if update.update_id and update.update_id == cursor.update_id:
                    continue
                page.updates.append(update)

            last = items[-1]
            next_cursor = UpdateCursor(
                migration_id=last.get('migration_id', cursor.migration_id),
                record_time=last.get('record_time') or cursor.record_time,
                update_id=last.get('update_id') or (page.updates[-1].update_id if page.updates else None),
            )
            if next_cursor == cursor:
                raise StalledPaginationError(cursor.to_dict(), pages_done, updates_done)

            page.cursor = next_cursor
            pages_done += 1
            updates_done += len(page.updates)
            self.observer.on_progress(pages_done, updates_done)
            yield page

            cursor = next_cursor
            if self.api_delay_seconds:
                self._sleep(self.api_delay_seconds)

    def fetch_updates_since(self, cursor: UpdateCursor) -> Iterator[LedgerUpdate]:
        for page in self.iter_pages(cursor):
            yield from page.updates
