"""
Housekeeping for snapshot runs: stale-run timeout and storage purge.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from .blob_store import BlobStore
from .metadata_store import MetadataStore
from .models import SnapshotRecord, SnapshotStatus, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_MINUTES = 30


def last_heartbeat(record: SnapshotRecord):
    return parse_timestamp(record.updated_at) or parse_timestamp(record.created_at)


def stalled_minutes(record: SnapshotRecord, now=None) -> float:
    heartbeat = last_heartbeat(record)
    if heartbeat is None:
        return float('inf')
    return ((now or utc_now()) - heartbeat).total_seconds() / 60


def is_stale(record: SnapshotRecord, stale_after_minutes: int = DEFAULT_STALE_AFTER_MINUTES, now=None) -> bool:
    """A processing run whose heartbeat is older than the staleness window is abandoned."""
    return (
        record.status == SnapshotStatus.PROCESSING
        and stalled_minutes(record, now) > stale_after_minutes
    )


def mark_timed_out(metadata_store: MetadataStore, record: SnapshotRecord, now=None) -> None:
    minutes = stalled_minutes(record, now)
    message = f"Snapshot processing exceeded timeout (stalled for {int(minutes)} minutes)"
    metadata_store.update_snapshot(
        record.id,
        status=SnapshotStatus.TIMEOUT,
        error_message=message,
    )
    metadata_store.append_log(
        record.id,
        'warning',
        message,
        {'stalled_minutes': int(minutes), 'processed_pages': record.processed_pages},
    )
    logger.warning(f"Snapshot {record.id}: {message}")


def cleanup_stale_snapshots(
    metadata_store: MetadataStore,
    stale_after_minutes: int = DEFAULT_STALE_AFTER_MINUTES,
    exclude_ids=(),
    now=None
) -> List[str]:
    """
    Mark every stale ``processing`` run as ``timeout``.

    Returns:
        Ids of the runs that were timed out
    """
    timed_out = []
    for record in metadata_store.find_snapshots(status=SnapshotStatus.PROCESSING):
        if record.id in exclude_ids or not is_stale(record, stale_after_minutes, now):
            continue
        mark_timed_out(metadata_store, record, now)
        timed_out.append(record.id)
    if timed_out:
        logger.info(f"Timed out {len(timed_out)} stale snapshot(s)")
    return timed_out


@dataclass
class PurgeResult:
    snapshot_ids: List[str] = field(default_factory=list)
    deleted_files: int = 0
    deleted_stats: int = 0

    def to_dict(self):
        return {
            'snapshot_ids': self.snapshot_ids,
            'deleted_files': self.deleted_files,
            'deleted_stats': self.deleted_stats,
        }


def purge_snapshot(blob_store: BlobStore, metadata_store: MetadataStore, snapshot_id: str) -> PurgeResult:
    """Delete a snapshot's artifacts, template stats and metadata row."""
    if not snapshot_id or '/' in snapshot_id:
        raise ValueError(f"Invalid snapshot id: {snapshot_id!r}")

    result = PurgeResult(snapshot_ids=[snapshot_id])
    for entry in blob_store.list(f"{snapshot_id}/"):
        if blob_store.delete(entry.name):
            result.deleted_files += 1
    result.deleted_stats = metadata_store.delete_template_stats(snapshot_id)
    metadata_store.delete_snapshot(snapshot_id)
    logger.info(
        f"Purged snapshot {snapshot_id}: {result.deleted_files} files, "
        f"{result.deleted_stats} template stats"
    )
    return result


def purge_incomplete(
    blob_store: BlobStore,
    metadata_store: MetadataStore,
    keep_processing: bool = True,
    stale_after_minutes: int = DEFAULT_STALE_AFTER_MINUTES
) -> PurgeResult:
    """
    Purge every failed or timed-out run.

    Live ``processing`` runs are kept; stale ones are purged too unless
    ``keep_processing`` is set.
    """
    total = PurgeResult()
    candidates: List[SnapshotRecord] = []
    for status in (SnapshotStatus.FAILED, SnapshotStatus.TIMEOUT):
        candidates.extend(metadata_store.find_snapshots(status=status))
    if not keep_processing:
        candidates.extend(
            record for record in metadata_store.find_snapshots(status=SnapshotStatus.PROCESSING)
            if is_stale(record, stale_after_minutes)
        )

    for record in candidates:
        result = purge_snapshot(blob_store, metadata_store, record.id)
        total.snapshot_ids.append(record.id)
        total.deleted_files += result.deleted_files
        total.deleted_stats += result.deleted_stats
    return total

