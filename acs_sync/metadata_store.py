"""
Metadata store for snapshot runs.

Tables:
- acs_snapshots: one row per synchronization run (status, cursor, totals)
- acs_template_stats: one row per (snapshot, template) aggregate
- snapshot_logs: append-only run log

BigQuery is the deployed backend; the in-memory store backs tests and
throwaway local runs.
"""

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from google.cloud import bigquery
from google.cloud.exceptions import NotFound
from google.api_core import retry

from .models import SnapshotRecord, TemplateStats, utc_now_iso

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = {
    'id': 'STRING',
    'migration_id': 'INT64',
    'record_time': 'STRING',
    'status': 'STRING',
    'is_delta': 'BOOL',
    'processing_mode': 'STRING',
    'previous_snapshot_id': 'STRING',
    'last_update_id': 'STRING',
    'cursor_after': 'INT64',
    'processed_pages': 'INT64',
    'processed_events': 'INT64',
    'amulet_total': 'FLOAT64',
    'locked_total': 'FLOAT64',
    'circulating_supply': 'FLOAT64',
    'entry_count': 'INT64',
    'canonical_package': 'STRING',
    'sv_url': 'STRING',
    'error_message': 'STRING',
    'created_at': 'STRING',
    'updated_at': 'STRING',
    'completed_at': 'STRING',
}

TEMPLATE_STATS_COLUMNS = {
    'snapshot_id': 'STRING',
    'template_id': 'STRING',
    'storage_path': 'STRING',
    'contract_count': 'INT64',
    'field_sums': 'STRING',      # JSON
    'status_tallies': 'STRING',  # JSON
    'updated_at': 'STRING',
}

LOG_COLUMNS = {
    'snapshot_id': 'STRING',
    'log_level': 'STRING',
    'message': 'STRING',
    'metadata': 'STRING',  # JSON
    'created_at': 'STRING',
}

# legacy SQL type names used by SchemaField
_SCHEMA_TYPES = {'INT64': 'INTEGER', 'FLOAT64': 'FLOAT', 'BOOL': 'BOOLEAN', 'STRING': 'STRING'}


class MetadataStore(ABC):
    """Relational metadata for snapshot runs and per-template statistics."""

    @abstractmethod
    def create_snapshot(self, record: SnapshotRecord) -> SnapshotRecord:
        ...

    @abstractmethod
    def update_snapshot(self, snapshot_id: str, **fields) -> None:
        """Update the given columns; ``updated_at`` is refreshed unless supplied."""

    @abstractmethod
    def get_snapshot(self, snapshot_id: str) -> Optional[SnapshotRecord]:
        ...

    @abstractmethod
    def find_snapshots(
        self,
        status: Optional[str] = None,
        migration_id: Optional[int] = None,
        limit: Optional[int] = None
    ) -> List[SnapshotRecord]:
        """Snapshots matching the filters, newest first."""

    def find_latest_snapshot(
        self,
        status: Optional[str] = None,
        migration_id: Optional[int] = None
    ) -> Optional[SnapshotRecord]:
        rows = self.find_snapshots(status=status, migration_id=migration_id, limit=1)
        return rows[0] if rows else None

    @abstractmethod
    def delete_snapshot(self, snapshot_id: str) -> bool:
        ...

    @abstractmethod
    def upsert_template_stats(self, stats: TemplateStats) -> None:
        ...

    @abstractmethod
    def list_template_stats(self, snapshot_id: str) -> List[TemplateStats]:
        ...

    @abstractmethod
    def delete_template_stats(self, snapshot_id: str) -> int:
        ...

    @abstractmethod
    def append_log(
        self,
        snapshot_id: str,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        ...

    @abstractmethod
    def list_logs(self, snapshot_id: str) -> List[Dict[str, Any]]:
        ...

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed metadata store."""

    def __init__(self):
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._stats: Dict[tuple, Dict[str, Any]] = {}
        self._logs: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def create_snapshot(self, record: SnapshotRecord) -> SnapshotRecord:
        with self._lock:
            if record.id in self._snapshots:
                raise ValueError(f"Snapshot {record.id} already exists")
            self._snapshots[record.id] = record.to_dict()
        return record

    def update_snapshot(self, snapshot_id: str, **fields) -> None:
        with self._lock:
            row = self._snapshots.get(snapshot_id)
            if row is None:
                raise KeyError(f"Unknown snapshot {snapshot_id}")
            unknown = set(fields) - set(SNAPSHOT_COLUMNS)
            if unknown:
                raise ValueError(f"Unknown snapshot columns: {sorted(unknown)}")
            fields.setdefault('updated_at', utc_now_iso())
            row.update(copy.deepcopy(fields))

    def get_snapshot(self, snapshot_id: str) -> Optional[SnapshotRecord]:
        with self._lock:
            row = self._snapshots.get(snapshot_id)
            return SnapshotRecord.from_dict(copy.deepcopy(row)) if row else None

    def find_snapshots(self, status=None, migration_id=None, limit=None) -> List[SnapshotRecord]:
        with self._lock:
            rows = [
                (row['created_at'], position, row)
                for position, row in enumerate(self._snapshots.values())
                if (status is None or row['status'] == status)
                and (migration_id is None or row['migration_id'] == migration_id)
            ]
        # insertion order breaks created_at ties
        rows.sort(key=lambda item: item[:2], reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [SnapshotRecord.from_dict(copy.deepcopy(row)) for _, _, row in rows]

    def delete_snapshot(self, snapshot_id: str) -> bool:
        with self._lock:
            return self._snapshots.pop(snapshot_id, None) is not None

    def upsert_template_stats(self, stats: TemplateStats) -> None:
        with self._lock:
            self._stats[(stats.snapshot_id, stats.template_id)] = copy.deepcopy(stats.to_dict())

    def list_template_stats(self, snapshot_id: str) -> List[TemplateStats]:
        with self._lock:
            rows = [row for (sid, _), row in sorted(self._stats.items()) if sid == snapshot_id]
            return [TemplateStats.from_dict(copy.deepcopy(row)) for row in rows]

    def delete_template_stats(self, snapshot_id: str) -> int:
        with self._lock:
            keys = [key for key in self._stats if key[0] == snapshot_id]
            for key in keys:
                del self._stats[key]
            return len(keys)

    def append_log(self, snapshot_id, level, message, metadata=None) -> None:
        with self._lock:
            self._logs.append({
                'snapshot_id': snapshot_id,
                'log_level': level,
                'message': message,
                'metadata': copy.deepcopy(metadata) if metadata else None,
                'created_at': utc_now_iso(),
            })

    def list_logs(self, snapshot_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(log) for log in self._logs if log['snapshot_id'] == snapshot_id]


class BigQueryMetadataStore(MetadataStore):
    """
    Metadata store on BigQuery.

    Rows are written with DML (not streaming inserts) so they can be updated
    immediately; only the append-only log uses insert_rows_json.
    """

    def __init__(
        self,
        project_id: str,
        dataset: str = "acs",
        client: Optional[bigquery.Client] = None
    ):
        self.project_id = project_id
        self.dataset = dataset
        self.snapshots_table_id = f"{project_id}.{dataset}.acs_snapshots"
        self.stats_table_id = f"{project_id}.{dataset}.acs_template_stats"
        self.logs_table_id = f"{project_id}.{dataset}.snapshot_logs"

        self.client = client or bigquery.Client(project=project_id)
        logger.info(f"BigQuery metadata store initialized for {project_id}.{dataset}")

        self._ensure_table(self.snapshots_table_id, SNAPSHOT_COLUMNS, required=('id',))
        self._ensure_table(self.stats_table_id, TEMPLATE_STATS_COLUMNS, required=('snapshot_id', 'template_id'))
        self._ensure_table(self.logs_table_id, LOG_COLUMNS, required=('snapshot_id',))

    def _ensure_table(self, table_id: str, columns: Dict[str, str], required=()):
        """Create the table if it doesn't exist."""
        schema = [
            bigquery.SchemaField(name, _SCHEMA_TYPES[kind], mode="REQUIRED" if name in required else "NULLABLE")
            for name, kind in columns.items()
        ]
        try:
            self.client.get_table(table_id)
            logger.debug(f"Table {table_id} already exists")
        except NotFound:
            self.client.create_table(bigquery.Table(table_id, schema=schema))
            logger.info(f"Created table: {table_id}")

    def _query(self, sql: str, params: List[bigquery.ScalarQueryParameter]):
        job_config = bigquery.QueryJobConfig(query_parameters=params)
        return self.client.query(sql, job_config=job_config).result()

    @staticmethod
    def _params(values: Dict[str, Any], columns: Dict[str, str]) -> List[bigquery.ScalarQueryParameter]:
        return [bigquery.ScalarQueryParameter(name, columns[name], value) for name, value in values.items()]

    # ========== Snapshots ==========

    def create_snapshot(self, record: SnapshotRecord) -> SnapshotRecord:
        row = record.to_dict()
        names = ', '.join(row)
        placeholders = ', '.join(f"@{name}" for name in row)
        self._query(
            f"INSERT INTO `{self.snapshots_table_id}` ({names}) VALUES ({placeholders})",
            self._params(row, SNAPSHOT_COLUMNS)
        )
        logger.info(f"Created snapshot record {record.id}")
        return record

    def update_snapshot(self, snapshot_id: str, **fields) -> None:
        unknown = set(fields) - set(SNAPSHOT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown snapshot columns: {sorted(unknown)}")
        fields.setdefault('updated_at', utc_now_iso())
        assignments = ', '.join(f"{name} = @{name}" for name in fields)
        params = self._params(fields, SNAPSHOT_COLUMNS)
        params.append(bigquery.ScalarQueryParameter('snapshot_id', 'STRING', snapshot_id))
        self._query(
            f"UPDATE `{self.snapshots_table_id}` SET {assignments} WHERE id = @snapshot_id",
            params
        )

    def get_snapshot(self, snapshot_id: str) -> Optional[SnapshotRecord]:
        rows = list(self._query(
            f"SELECT * FROM `{self.snapshots_table_id}` WHERE id = @snapshot_id LIMIT 1",
            [bigquery.ScalarQueryParameter('snapshot_id', 'STRING', snapshot_id)]
        ))
        return SnapshotRecord.from_dict(dict(rows[0].items())) if rows else None

    def find_snapshots(self, status=None, migration_id=None, limit=None) -> List[SnapshotRecord]:
        clauses = []
        params = []
        if status is not None:
            clauses.append("status = @status")
            params.append(bigquery.ScalarQueryParameter('status', 'STRING', status))
        if migration_id is not None:
            clauses.append("migration_id = @migration_id")
            params.append(bigquery.ScalarQueryParameter('migration_id', 'INT64', migration_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT * FROM `{self.snapshots_table_id}` {where} ORDER BY created_at DESC"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        return [SnapshotRecord.from_dict(dict(row.items())) for row in self._query(sql, params)]

    def delete_snapshot(self, snapshot_id: str) -> bool:
        job = self.client.query(
            f"DELETE FROM `{self.snapshots_table_id}` WHERE id = @snapshot_id",
            job_config=bigquery.QueryJobConfig(query_parameters=[
                bigquery.ScalarQueryParameter('snapshot_id', 'STRING', snapshot_id)
            ])
        )
        job.result()
        return bool(job.num_dml_affected_rows)

    # ========== Template stats ==========

    def upsert_template_stats(self, stats: TemplateStats) -> None:
        row = {
            'snapshot_id': stats.snapshot_id,
            'template_id': stats.template_id,
            'storage_path': stats.storage_path,
            'contract_count': stats.aggregate.contract_count,
            'field_sums': json.dumps(stats.aggregate.field_sums, sort_keys=True),
            'status_tallies': json.dumps(stats.aggregate.status_tallies, sort_keys=True),
            'updated_at': utc_now_iso(),
        }
        query = f"""
        MERGE `{self.stats_table_id}` T
        USING (SELECT @snapshot_id AS snapshot_id, @template_id AS template_id) S
        ON T.snapshot_id = S.snapshot_id AND T.template_id = S.template_id
        WHEN MATCHED THEN
            UPDATE SET storage_path = @storage_path,
                       contract_count = @contract_count,
                       field_sums = @field_sums,
                       status_tallies = @status_tallies,
                       updated_at = @updated_at
        WHEN NOT MATCHED THEN
            INSERT (snapshot_id, template_id, storage_path, contract_count, field_sums, status_tallies, updated_at)
            VALUES (@snapshot_id, @template_id, @storage_path, @contract_count, @field_sums, @status_tallies, @updated_at)
        """
        self._query(query, self._params(row, TEMPLATE_STATS_COLUMNS))

    def list_template_stats(self, snapshot_id: str) -> List[TemplateStats]:
        rows = self._query(
            f"SELECT * FROM `{self.stats_table_id}` WHERE snapshot_id = @snapshot_id ORDER BY template_id",
            [bigquery.ScalarQueryParameter('snapshot_id', 'STRING', snapshot_id)]
        )
        result = []
        for row in rows:
            data = dict(row.items())
            data['field_sums'] = json.loads(data.get('field_sums') or '{}')
            data['status_tallies'] = json.loads(data.get('status_tallies') or '{}')
            result.append(TemplateStats.from_dict(data))
        return result

    def delete_template_stats(self, snapshot_id: str) -> int:
        job = self.client.query(
            f"DELETE FROM `{self.stats_table_id}` WHERE snapshot_id = @snapshot_id",
            job_config=bigquery.QueryJobConfig(query_parameters=[
                bigquery.ScalarQueryParameter('snapshot_id', 'STRING', snapshot_id)
            ])
        )
        job.result()
        return job.num_dml_affected_rows or 0

    # ========== Logs ==========

    def append_log(self, snapshot_id, level, message, metadata=None) -> None:
        row = {
            'snapshot_id': snapshot_id,
            'log_level': level,
            'message': message,
            'metadata': json.dumps(metadata, default=str) if metadata else None,
            'created_at': utc_now_iso(),
        }
        errors = self.client.insert_rows_json(self.logs_table_id, [row], retry=retry.Retry(deadline=60))
        if errors:
            # diagnostic only; never fails the run
            logger.error(f"Errors inserting snapshot log: {errors}")

    def list_logs(self, snapshot_id: str) -> List[Dict[str, Any]]:
        rows = self._query(
            f"SELECT * FROM `{self.logs_table_id}` WHERE snapshot_id = @snapshot_id ORDER BY created_at",
            [bigquery.ScalarQueryParameter('snapshot_id', 'STRING', snapshot_id)]
        )
        logs = []
        for row in rows:
            data = dict(row.items())
            data['metadata'] = json.loads(data['metadata']) if data.get('metadata') else None
            logs.append(data)
        return logs

    def close(self):
        self.client.close()


def create_metadata_store(config) -> MetadataStore:
    """Build the metadata store selected by ``config.metadata_backend``."""
    if config.metadata_backend == 'bigquery':
        return BigQueryMetadataStore(config.bq_project_id, dataset=config.bq_dataset)
    return InMemoryMetadataStore()
