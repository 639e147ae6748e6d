"""
Tests for the metadata stores.

The BigQuery client is mocked; no cloud access.
"""

from unittest.mock import MagicMock

import pytest
from google.cloud.exceptions import NotFound

from acs_sync.metadata_store import BigQueryMetadataStore, InMemoryMetadataStore
from acs_sync.models import SnapshotRecord, SnapshotStatus, TemplateAggregate, TemplateStats


class TestInMemoryMetadataStore:
    """Tests for the dict-backed store."""

    def test_create_and_update(self):
        store = InMemoryMetadataStore()
        store.create_snapshot(SnapshotRecord(id='s1', migration_id=2))
        store.update_snapshot('s1', status=SnapshotStatus.COMPLETED, entry_count=7)

        record = store.get_snapshot('s1')
        assert record.status == SnapshotStatus.COMPLETED
        assert record.entry_count == 7
        assert record.migration_id == 2

    def test_duplicate_id_rejected(self):
        store = InMemoryMetadataStore()
        store.create_snapshot(SnapshotRecord(id='s1'))
        with pytest.raises(ValueError):
            store.create_snapshot(SnapshotRecord(id='s1'))

    def test_unknown_column_rejected(self):
        store = InMemoryMetadataStore()
        store.create_snapshot(SnapshotRecord(id='s1'))
        with pytest.raises(ValueError):
            store.update_snapshot('s1', colour='blue')

    def test_find_newest_first(self):
        store = InMemoryMetadataStore()
        store.create_snapshot(SnapshotRecord(id='old', created_at='2024-01-01T00:00:00Z'))
        store.create_snapshot(SnapshotRecord(id='new', created_at='2024-02-01T00:00:00Z'))
        store.create_snapshot(SnapshotRecord(id='done', status=SnapshotStatus.COMPLETED, migration_id=3))

        assert [r.id for r in store.find_snapshots(status=SnapshotStatus.PROCESSING)] == ['new', 'old']
        assert store.find_latest_snapshot(status=SnapshotStatus.COMPLETED).id == 'done'
        assert store.find_snapshots(migration_id=4) == []

    def test_returned_records_are_copies(self):
        store = InMemoryMetadataStore()
        store.create_snapshot(SnapshotRecord(id='s1'))
        record = store.get_snapshot('s1')
        record.status = SnapshotStatus.FAILED
        assert store.get_snapshot('s1').status == SnapshotStatus.PROCESSING

    def test_template_stats_upsert(self):
        store = InMemoryMetadataStore()
        aggregate = TemplateAggregate()
        aggregate.add_record({'amount': {'initialAmount': '5.0'}})
        store.upsert_template_stats(TemplateStats('s1', 'pkg:M:T', 's1/a.json', aggregate))
        store.upsert_template_stats(TemplateStats('s1', 'pkg:M:T', 's1/b.json', aggregate))

        stats = store.list_template_stats('s1')
        assert len(stats) == 1
        assert stats[0].storage_path == 's1/b.json'
        assert stats[0].contract_count == 1
        assert store.delete_template_stats('s1') == 1


class TestBigQueryMetadataStore:
    """Tests for the BigQuery store over a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.insert_rows_json.return_value = []
        return client

    def test_creates_missing_tables(self, client):
        client.get_table.side_effect = NotFound('missing')
        BigQueryMetadataStore('proj', 'acs', client=client)
        created = [call.args[0].table_id for call in client.create_table.call_args_list]
        assert created == ['acs_snapshots', 'acs_template_stats', 'snapshot_logs']

    def test_existing_tables_left_alone(self, client):
        BigQueryMetadataStore('proj', 'acs', client=client)
        client.create_table.assert_not_called()

    def test_update_is_parameterized(self, client):
        store = BigQueryMetadataStore('proj', 'acs', client=client)
        store.update_snapshot('s1', status='completed')

        sql = client.query.call_args.args[0]
        job_config = client.query.call_args.kwargs['job_config']
        assert sql.startswith('UPDATE `proj.acs.acs_snapshots` SET status = @status')
        assert 'WHERE id = @snapshot_id' in sql
        names = {p.name: p.value for p in job_config.query_parameters}
        assert names['status'] == 'completed'
        assert names['snapshot_id'] == 's1'
        assert 'updated_at' in names

    def test_update_rejects_unknown_column(self, client):
        store = BigQueryMetadataStore('proj', 'acs', client=client)
        with pytest.raises(ValueError):
            store.update_snapshot('s1', colour='blue')
        client.query.assert_not_called()

    def test_template_stats_merge(self, client):
        store = BigQueryMetadataStore('proj', 'acs', client=client)
        store.upsert_template_stats(TemplateStats('s1', 'pkg:M:T', 's1/x.json', TemplateAggregate()))
        sql = client.query.call_args.args[0]
        assert 'MERGE `proj.acs.acs_template_stats`' in sql

    def test_log_insert_errors_do_not_raise(self, client):
        client.insert_rows_json.return_value = [{'errors': ['bad row']}]
        store = BigQueryMetadataStore('proj', 'acs', client=client)
        store.append_log('s1', 'info', 'hello', {'pages': 1})
        table_id, rows = client.insert_rows_json.call_args.args
        assert table_id == 'proj.acs.snapshot_logs'
        assert rows[0]['metadata'] == '{"pages": 1}'

    def test_delete_reports_affected_rows(self, client):
        client.query.return_value.num_dml_affected_rows = 1
        store = BigQueryMetadataStore('proj', 'acs', client=client)
        assert store.delete_snapshot('s1') is True
