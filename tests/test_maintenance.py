"""
Tests for stale-run timeout and snapshot purge.
"""

from datetime import timedelta

import pytest

from acs_sync.maintenance import cleanup_stale_snapshots, is_stale, purge_incomplete, purge_snapshot
from acs_sync.models import SnapshotRecord, SnapshotStatus, TemplateAggregate, TemplateStats, parse_timestamp

NOW = parse_timestamp('2024-05-01T12:00:00Z')


def at(minutes_ago):
    return (NOW - timedelta(minutes=minutes_ago)).isoformat().replace('+00:00', 'Z')


def seed(metadata_store, blob_store, snapshot_id, status=SnapshotStatus.COMPLETED, files=2):
    metadata_store.create_snapshot(SnapshotRecord(id=snapshot_id, status=status))
    for i in range(files):
        blob_store.upload(f"{snapshot_id}/tmpl/chunk_{i}.json", b'[]')
    metadata_store.upsert_template_stats(
        TemplateStats(snapshot_id, 'pkg:M:T', f"{snapshot_id}/tmpl/manifest.json", TemplateAggregate())
    )


class TestStaleness:
    """Tests for is_stale and cleanup_stale_snapshots."""

    def test_heartbeat_decides(self):
        """A long-running run with a recent heartbeat is not stale."""
        record = SnapshotRecord(id='r', created_at=at(300), updated_at=at(5))
        assert not is_stale(record, 30, now=NOW)
        record.updated_at = at(45)
        assert is_stale(record, 30, now=NOW)

    def test_only_processing_runs(self):
        record = SnapshotRecord(id='r', status=SnapshotStatus.FAILED, created_at=at(300), updated_at=at(300))
        assert not is_stale(record, 30, now=NOW)

    def test_cleanup_marks_timeout(self, metadata_store):
        metadata_store.create_snapshot(SnapshotRecord(id='stale', created_at=at(120), updated_at=at(60)))
        metadata_store.create_snapshot(SnapshotRecord(id='fresh', created_at=at(10), updated_at=at(1)))
        metadata_store.create_snapshot(SnapshotRecord(id='kept', created_at=at(120), updated_at=at(60)))

        timed_out = cleanup_stale_snapshots(metadata_store, 30, exclude_ids={'kept'}, now=NOW)

        assert timed_out == ['stale']
        record = metadata_store.get_snapshot('stale')
        assert record.status == SnapshotStatus.TIMEOUT
        assert record.error_message == 'Snapshot processing exceeded timeout (stalled for 60 minutes)'
        assert metadata_store.get_snapshot('fresh').status == SnapshotStatus.PROCESSING
        assert metadata_store.get_snapshot('kept').status == SnapshotStatus.PROCESSING
        assert metadata_store.list_logs('stale')[0]['log_level'] == 'warning'


class TestPurge:
    """Tests for purge_snapshot and purge_incomplete."""

    def test_purge_snapshot(self, metadata_store, blob_store):
        seed(metadata_store, blob_store, 'a')
        seed(metadata_store, blob_store, 'ab')

        result = purge_snapshot(blob_store, metadata_store, 'a')

        assert result.deleted_files == 2
        assert result.deleted_stats == 1
        assert metadata_store.get_snapshot('a') is None
        # prefix match stops at the separator
        assert len(blob_store.list('ab/')) == 2
        assert metadata_store.get_snapshot('ab') is not None

    @pytest.mark.parametrize('snapshot_id', ['', 'a/b', '../etc'])
    def test_invalid_id(self, metadata_store, blob_store, snapshot_id):
        with pytest.raises(ValueError):
            purge_snapshot(blob_store, metadata_store, snapshot_id)

    def test_purge_incomplete_keeps_completed(self, metadata_store, blob_store):
        seed(metadata_store, blob_store, 'done')
        seed(metadata_store, blob_store, 'broken', status=SnapshotStatus.FAILED)
        seed(metadata_store, blob_store, 'slow', status=SnapshotStatus.TIMEOUT, files=1)

        result = purge_incomplete(blob_store, metadata_store)

        assert sorted(result.snapshot_ids) == ['broken', 'slow']
        assert result.deleted_files == 3
        assert [r.id for r in metadata_store.find_snapshots()] == ['done']

    def test_purge_incomplete_stale_processing(self, metadata_store, blob_store):
        metadata_store.create_snapshot(SnapshotRecord(
            id='abandoned', created_at='2020-01-01T00:00:00Z', updated_at='2020-01-01T00:00:00Z'
        ))
        metadata_store.create_snapshot(SnapshotRecord(id='live'))

        kept = purge_incomplete(blob_store, metadata_store)
        assert kept.snapshot_ids == []

        result = purge_incomplete(blob_store, metadata_store, keep_processing=False)
        assert result.snapshot_ids == ['abandoned']
        assert metadata_store.get_snapshot('live') is not None
