"""
Migration/epoch discovery.

The current migration is the highest id, probed linearly from 1, for which
the snapshot-timestamp endpoint answers with a record time.
"""

import logging
from typing import Optional

from .canton_scan_client import SpliceScanClient
from .errors import NoEpochFound, ScanApiError
from .models import Epoch, utc_now_iso

logger = logging.getLogger(__name__)

# Safety bound for the linear probe
MAX_PROBE_MIGRATIONS = 1000


class EpochProber:
    """Finds the current migration id and a verified snapshot record time."""

    def __init__(
        self,
        client: SpliceScanClient,
        migration_id_override: Optional[int] = None,
        record_time_override: Optional[str] = None,
        max_probe: int = MAX_PROBE_MIGRATIONS
    ):
        self.client = client
        self.migration_id_override = migration_id_override
        self.record_time_override = record_time_override
        self.max_probe = max_probe

    def _probe(self, migration_id: int, before: str) -> Optional[str]:
        try:
            data = self.client.get_acs_snapshot_timestamp(before, migration_id)
        except ScanApiError as e:
            logger.debug(f"Migration {migration_id} probe failed: {e}")
            return None
        return (data or {}).get('record_time') or None

    def discover_latest_epoch(self) -> int:
        """
        Probe migration ids 1, 2, 3, ... until one fails or has no record time.

        Returns:
            The last id that answered

        Raises:
            NoEpochFound: If id 1 already fails
        """
        logger.info("Probing for latest valid migration ID...")
        before = utc_now_iso()
        latest = None
        migration_id = 1
        while migration_id <= self.max_probe:
            if self._probe(migration_id, before) is None:
                break
            latest = migration_id
            migration_id += 1

        if latest is None:
            raise NoEpochFound()
        logger.info(f"Using latest migration_id: {latest}")
        return latest

    def resolve_snapshot_time(self, migration_id: int) -> str:
        """
        Fetch the latest snapshot time, then re-query with it as the upper bound.

        A lagging replica can answer the first query with a stale value; when
        the second answer differs it is used instead.
        """
        data = self.client.get_acs_snapshot_timestamp(utc_now_iso(), migration_id)
        record_time = (data or {}).get('record_time')
        if not record_time:
            raise NoEpochFound(f"Migration {migration_id} has no snapshot timestamp")
        logger.info(f"Initial snapshot timestamp: {record_time}")

        verified = self._probe(migration_id, record_time)
        if verified and verified != record_time:
            logger.info(f"Updated to verified snapshot: {verified}")
            record_time = verified
        return record_time

    def discover(self) -> Epoch:
        """Epoch for this run, honoring configured overrides."""
        if self.migration_id_override is not None:
            migration_id = self.migration_id_override
            logger.info(f"Using configured migration_id: {migration_id}")
        else:
            migration_id = self.discover_latest_epoch()

        if self.record_time_override:
            record_time = self.record_time_override
            logger.info(f"Using configured record_time: {record_time}")
        else:
            record_time = self.resolve_snapshot_time(migration_id)

        return Epoch(migration_id=migration_id, record_time=record_time)
