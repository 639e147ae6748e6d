"""
Shared fixtures: a scripted Scan API fake, ledger event builders and
in-memory storage backends.
"""

from typing import Any, Dict, List, Optional

import pytest

from acs_sync.blob_store import InMemoryBlobStore
from acs_sync.config import SyncConfig
from acs_sync.errors import ScanApiError
from acs_sync.metadata_store import InMemoryMetadataStore
from acs_sync.sync_engine import SyncEngine

AMULET_TID = 'pkg1:Splice.Amulet:Amulet'
LOCKED_TID = 'pkg1:Splice.Amulet:LockedAmulet'
ROUND_TID = 'pkg1:Splice.Round:OpenMiningRound'

T1 = '2024-05-01T10:00:00Z'
T2 = '2024-05-01T10:05:00Z'


def amulet_args(amount, owner='alice::1220aa'):
    return {
        'owner': owner,
        'amount': {
            'initialAmount': str(amount),
            'createdAt': {'number': '12'},
            'ratePerRound': {'rate': '0.0004'},
        },
    }


def locked_args(amount, owner='bob::1220bb'):
    return {
        'amulet': amulet_args(amount, owner),
        'lock': {'holders': ['dso::1220cc'], 'expiresAt': {'microsecondsSinceEpoch': '0'}},
    }


def created_event(contract_id, template_id=AMULET_TID, args=None, event_id=None):
    return {
        'event_type': 'created_event',
        'event_id': event_id or f"#{contract_id}:0",
        'contract_id': contract_id,
        'template_id': template_id,
        'package_name': 'splice-amulet',
        'create_arguments': args if args is not None else amulet_args('1.0'),
        'created_at': T1,
    }


def exercised_event(contract_id, choice, template_id=AMULET_TID, consuming=True,
                    event_id=None, exercise_result=None, choice_argument=None, children=None):
    return {
        'event_type': 'exercised_event',
        'event_id': event_id or f"#{contract_id}:x",
        'contract_id': contract_id,
        'template_id': template_id,
        'choice': choice,
        'consuming': consuming,
        'choice_argument': choice_argument or {},
        'exercise_result': exercise_result or {},
        'child_event_ids': children or [],
    }


def transaction(update_id, record_time, events: List[Dict[str, Any]], migration_id=1):
    """Flat /v2/updates transaction with every event as a root."""
    events_by_id = {event['event_id']: event for event in events}
    return {
        'update_id': update_id,
        'migration_id': migration_id,
        'record_time': record_time,
        'events_by_id': events_by_id,
        'root_event_ids': list(events_by_id),
    }


class FakeScanClient:
    """
    Scripted stand-in for SpliceScanClient.

    ``migrations`` maps migration id to a record time, or to a list of record
    times returned on successive calls. The ACS is served from ``contracts``
    by offset; ``acs_errors`` raises once at a given offset. ``update_pages``
    are returned in order, then empty pages.
    """

    def __init__(
        self,
        migrations: Optional[Dict[int, Any]] = None,
        contracts: Optional[List[Dict[str, Any]]] = None,
        update_pages: Optional[List[List[Dict[str, Any]]]] = None
    ):
        self.migrations = migrations or {}
        self.contracts = list(contracts or [])
        self.update_pages = list(update_pages or [])
        self.acs_errors: Dict[int, Exception] = {}
        self.timestamp_calls = []
        self.acs_calls = []
        self.update_calls = []
        self._timestamp_counts: Dict[int, int] = {}
        self.closed = False

    def get_acs_snapshot_timestamp(self, before, migration_id):
        self.timestamp_calls.append((before, migration_id))
        value = self.migrations.get(migration_id)
        if value is None:
            raise ScanApiError("HTTP 404: migration not found", status_code=404)
        if isinstance(value, list):
            count = self._timestamp_counts.get(migration_id, 0)
            self._timestamp_counts[migration_id] = count + 1
            value = value[min(count, len(value) - 1)]
        return {'record_time': value, 'migration_id': migration_id}

    def get_acs(self, migration_id, record_time, after=None, page_size=1000, **kwargs):
        self.acs_calls.append(after)
        error = self.acs_errors.pop(after or 0, None)
        if error is not None:
            raise error
        start = after or 0
        events = self.contracts[start:start + page_size]
        return {
            'record_time': record_time,
            'migration_id': migration_id,
            'created_events': events,
            'range': {'from': start, 'to': start + len(events)},
        }

    def get_updates(self, after_migration_id=None, after_record_time=None, page_size=500, **kwargs):
        self.update_calls.append((after_migration_id, after_record_time))
        if self.update_pages:
            return {'transactions': self.update_pages.pop(0)}
        return {'transactions': []}

    def health_check(self):
        return True

    def close(self):
        self.closed = True


@pytest.fixture
def scan_client():
    return FakeScanClient(migrations={1: T1})


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def config():
    """Config with in-memory backends and no pacing."""
    return SyncConfig(
        storage_backend='memory',
        metadata_backend='memory',
        acs_page_size=2,
        updates_page_size=10,
        api_delay_seconds=0.0,
        chunk_size=2,
        checkpoint_pages=1,
        max_concurrency=2,
    )


@pytest.fixture
def make_engine(config, scan_client, blob_store, metadata_store):
    """Build an engine over the shared fakes; keyword arguments override them."""
    def factory(**overrides):
        kwargs = dict(
            config=config,
            scan_client=scan_client,
            blob_store=blob_store,
            metadata_store=metadata_store,
            sleep=lambda seconds: None,
        )
        kwargs.update(overrides)
        return SyncEngine(**kwargs)
    return factory
