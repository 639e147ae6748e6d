"""
Tests for update parsing and the incremental update fetcher.
"""

import pytest

from acs_sync.concurrency import CancellationToken
from acs_sync.errors import StalledPaginationError, SyncCancelled
from acs_sync.models import UpdateCursor, UpdateKind
from acs_sync.update_fetcher import IncrementalUpdateFetcher, classify_event, parse_update

from conftest import AMULET_TID, T1, T2, FakeScanClient, created_event, exercised_event, transaction

T3 = '2024-05-01T10:10:00Z'


class TestClassifyEvent:
    """Tests for event classification."""

    def test_wrapped_and_flat_shapes(self):
        body = {'contract_id': 'c1'}
        assert classify_event({'created_event': body}) == ('created', body)
        assert classify_event({'archived': body}) == ('archived', body)
        assert classify_event({'event_type': 'exercised_event', 'choice': 'X'})[0] == 'exercised'
        assert classify_event({'create_arguments': {}})[0] == 'created'
        assert classify_event({'foo': 1})[0] is None


class TestParseUpdate:
    """Tests for parse_update."""

    def test_flat_transaction(self):
        item = transaction('u1', T2, [
            created_event('c1', event_id='e1'),
            exercised_event('c0', 'Amulet_Transfer', consuming=True, event_id='e2'),
            exercised_event('r1', 'Round_Fetch', consuming=False, event_id='e3'),
        ])
        update = parse_update(item)

        assert update.kind == UpdateKind.TRANSACTION
        assert update.update_id == 'u1'
        assert update.record_time == T2
        assert [c.contract_id for c in update.created] == ['c1']
        assert [a.contract_id for a in update.archived] == ['c0']
        assert update.archived[0].choice == 'Amulet_Transfer'
        assert len(update.exercised) == 2
        assert update.event_order == [('created', 0), ('archived', 0)]

    def test_wrapped_transaction(self):
        """The older {update: {type, transaction, events_by_id}} envelope."""
        item = {
            'migration_id': 3,
            'record_time': T2,
            'update': {
                'type': 'transaction',
                'transaction': {'update_id': 'u9', 'root_event_ids': ['e1']},
                'events_by_id': {'e1': {'created_event': created_event('c9', event_id='e1')}},
            },
        }
        update = parse_update(item)
        assert update.update_id == 'u9'
        assert update.migration_id == 3
        assert [c.contract_id for c in update.created] == ['c9']

    def test_event_order_follows_tree(self):
        """Children are visited right after their parent, before later roots."""
        parent = exercised_event('c0', 'Amulet_Transfer', event_id='p', children=['child'])
        child = created_event('c2', event_id='child')
        later = created_event('c3', event_id='later')
        item = {
            'update_id': 'u1', 'migration_id': 1, 'record_time': T2,
            'events_by_id': {'later': later, 'child': child, 'p': parent},
            'root_event_ids': ['p', 'later'],
        }
        update = parse_update(item)
        assert [c.contract_id for c in update.created] == ['c2', 'c3']
        assert update.event_order == [('archived', 0), ('created', 0), ('created', 1)]

    def test_assign_creates_unassign_ignored(self):
        assign = {
            'update_id': 'r1', 'migration_id': 1, 'record_time': T2,
            'event': {'created_event': created_event('c7')},
        }
        unassign = {
            'update_id': 'r2', 'migration_id': 1, 'record_time': T2,
            'event': {'contract_id': 'c7', 'source': 'sync-a', 'target': 'sync-b'},
        }
        assert parse_update(assign).kind == UpdateKind.REASSIGNMENT
        assert [c.contract_id for c in parse_update(assign).created] == ['c7']
        assert parse_update(unassign).created == []
        assert parse_update(unassign).archived == []

    def test_unknown_shape_skipped(self):
        assert parse_update({'something': 'else'}) is None


class TestIncrementalUpdateFetcher:
    """Tests for update stream paging."""

    def test_pages_until_drained(self):
        client = FakeScanClient(update_pages=[
            [transaction('u1', T2, [created_event('c1', event_id='e1')])],
            [transaction('u2', T3, [created_event('c2', event_id='e2')])],
        ])
        fetcher = IncrementalUpdateFetcher(client)
        pages = list(fetcher.iter_pages(UpdateCursor(1, T1)))

        assert [u.update_id for p in pages for u in p.updates] == ['u1', 'u2']
        assert pages[-1].cursor == UpdateCursor(1, T3, 'u2')
        assert client.update_calls == [(1, T1), (1, T2), (1, T3)]
        assert fetcher.reached_page_limit is False

    def test_update_at_cursor_is_skipped(self):
        """The boundary update already applied by the previous run is not re-applied."""
        client = FakeScanClient(update_pages=[[
            transaction('u1', T1, [created_event('c1', event_id='e1')]),
            transaction('u2', T2, [created_event('c2', event_id='e2')]),
        ]])
        fetcher = IncrementalUpdateFetcher(client)
        updates = list(fetcher.fetch_updates_since(UpdateCursor(1, T1, 'u1')))
        assert [u.update_id for u in updates] == ['u2']

    def test_unchanged_cursor_raises(self):
        client = FakeScanClient(update_pages=[[transaction('u1', T1, [created_event('c1', event_id='e1')])]])
        fetcher = IncrementalUpdateFetcher(client)
        with pytest.raises(StalledPaginationError):
            list(fetcher.iter_pages(UpdateCursor(1, T1, 'u1')))

    def test_page_limit_stops_without_error(self):
        client = FakeScanClient(update_pages=[
            [transaction('u1', T2, [created_event('c1', event_id='e1')])],
            [transaction('u2', T3, [created_event('c2', event_id='e2')])],
        ])
        fetcher = IncrementalUpdateFetcher(client, max_pages=1)
        pages = list(fetcher.iter_pages(UpdateCursor(1, T1)))

        assert len(pages) == 1
        assert fetcher.reached_page_limit is True
        assert pages[0].cursor.record_time == T2

    def test_cancellation(self):
        token = CancellationToken()
        token.cancel('test')
        fetcher = IncrementalUpdateFetcher(FakeScanClient(), cancel_token=token)
        with pytest.raises(SyncCancelled):
            list(fetcher.iter_pages(UpdateCursor(1, T1)))
