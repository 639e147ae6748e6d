"""
ACS Synchronization Engine

Orchestrates one synchronization run:
1. Refuse to start while another run is live; time out abandoned ones
2. Discover the current migration and snapshot record time
3. Full mode: page the ACS into per-template artifacts, checkpointing as it goes
   Delta mode: replay updates since the last completed snapshot onto its contracts
4. Record per-template statistics, supply totals and the new cursor
"""

import logging
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Set

from .aggregator import Aggregator, template_aggregate_for
from .artifact_codec import ArtifactCodec, ChunkedArtifactWriter
from .blob_store import BlobStore, create_blob_store
from .burn import BurnBreakdown, BurnCalculator
from .canton_scan_client import SpliceScanClient, build_auth_headers
from .concurrency import BoundedScheduler, CancellationToken
from .config import SyncConfig
from .epoch_prober import EpochProber
from .errors import SyncCancelled, SyncInProgressError
from .maintenance import cleanup_stale_snapshots, is_stale
from .metadata_store import MetadataStore, create_metadata_store
from .models import (
    Epoch,
    ProcessingMode,
    SnapshotRecord,
    SnapshotStatus,
    SupplyTotals,
    SyncRunState,
    TemplateAggregate,
    TemplateStats,
    UpdateCursor,
    utc_now_iso,
)
from .progress import (
    CompositeProgressObserver,
    LoggingProgressObserver,
    MetadataProgressObserver,
    ProgressObserver,
)
from .reconciler import ContractMap, apply_delta, build_baseline, extract_raw_contract_id
from .snapshot_fetcher import FullSnapshotFetcher
from .update_fetcher import IncrementalUpdateFetcher

logger = logging.getLogger(__name__)

RESULT_COMPLETED = 'completed'
RESULT_FAILED = 'failed'
RESULT_UP_TO_DATE = 'up_to_date'


@dataclass
class SyncResult:
    """Summary of one synchronization run."""
    snapshot_id: Optional[str] = None
    status: str = RESULT_FAILED
    mode: Optional[str] = None
    migration_id: Optional[int] = None
    record_time: Optional[str] = None
    previous_snapshot_id: Optional[str] = None
    resumed: bool = False
    pages_fetched: int = 0
    events_processed: int = 0
    updates_applied: int = 0
    entry_count: int = 0
    template_count: int = 0
    amulet_total: float = 0.0
    locked_total: float = 0.0
    circulating_supply: float = 0.0
    canonical_package: Optional[str] = None
    burn: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: str = ""
    completed_at: str = ""

    @property
    def success(self) -> bool:
        return self.status in (RESULT_COMPLETED, RESULT_UP_TO_DATE)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['success'] = self.success
        return data


class SyncEngine:
    """
    Snapshot/delta synchronization of the Active Contract Set.

    Collaborators can be injected (tests, alternative backends); otherwise
    they are built lazily from the configuration.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        scan_client: Optional[SpliceScanClient] = None,
        blob_store: Optional[BlobStore] = None,
        metadata_store: Optional[MetadataStore] = None,
        cancel_token: Optional[CancellationToken] = None,
        observer: Optional[ProgressObserver] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config or SyncConfig()
        self.cancel_token = cancel_token or CancellationToken()
        self.observer = observer
        self._sleep = sleep

        self._scan_client = scan_client
        self._blob_store = blob_store
        self._metadata_store = metadata_store
        self._codec: Optional[ArtifactCodec] = None
        self._owns_scan_client = scan_client is None

    # ========== Collaborators ==========

    @property
    def scan_client(self) -> SpliceScanClient:
        """Lazily initialize Scan API client."""
        if self._scan_client is None:
            self._scan_client = SpliceScanClient(
                base_url=self.config.scan_api_base_url,
                timeout=self.config.scan_api_timeout,
                max_retries=self.config.scan_api_max_retries,
                auth_headers=build_auth_headers(self.config)
            )
        return self._scan_client

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = create_blob_store(self.config)
        return self._blob_store

    @property
    def metadata_store(self) -> MetadataStore:
        if self._metadata_store is None:
            self._metadata_store = create_metadata_store(self.config)
        return self._metadata_store

    @property
    def codec(self) -> ArtifactCodec:
        if self._codec is None:
            scheduler = BoundedScheduler(self.config.max_concurrency, cancel_token=self.cancel_token)
            self._codec = ArtifactCodec(self.blob_store, chunk_size=self.config.chunk_size, scheduler=scheduler)
        return self._codec

    @property
    def aggregator(self) -> Aggregator:
        return Aggregator(self.codec, self.metadata_store)

    def _observer_for(self, snapshot_id: str, label: str) -> ProgressObserver:
        observers: List[ProgressObserver] = [
            LoggingProgressObserver(label),
            MetadataProgressObserver(self.metadata_store, snapshot_id),
        ]
        if self.observer is not None:
            observers.append(self.observer)
        return CompositeProgressObserver(observers)

    # ========== Run ==========

    def run_sync(self) -> SyncResult:
        """
        Execute one synchronization run.

        Returns:
            SyncResult with status completed, up_to_date or failed

        Raises:
            ConfigurationError: Before any network call, if the config is invalid
            SyncInProgressError: If a live run already owns the cursor
            NoEpochFound: If no migration answers the snapshot probe
        """
        self.config.validate()
        result = SyncResult(started_at=utc_now_iso())

        stale_window = self.config.stale_after_minutes
        processing = self.metadata_store.find_snapshots(status=SnapshotStatus.PROCESSING)
        live = [r for r in processing if not is_stale(r, stale_window)]
        if live:
            raise SyncInProgressError(live[0].id)

        epoch = EpochProber(
            self.scan_client,
            migration_id_override=self.config.migration_id_override,
            record_time_override=self.config.record_time_override
        ).discover()
        result.migration_id = epoch.migration_id

        adopted = self._adoptable_run(processing, epoch)
        cleanup_stale_snapshots(
            self.metadata_store,
            stale_window,
            exclude_ids={adopted.id} if adopted else ()
        )

        previous = None
        if adopted is None and not self.config.force_full_snapshot:
            previous = self.metadata_store.find_latest_snapshot(
                status=SnapshotStatus.COMPLETED,
                migration_id=epoch.migration_id
            )

        if adopted is not None:
            record = adopted
            logger.info(f"Resuming snapshot {record.id} from after={record.cursor_after}")
            self.metadata_store.append_log(record.id, 'info', 'Resuming abandoned snapshot',
                                           {'cursor_after': record.cursor_after})
        else:
            record = SnapshotRecord(
                id=str(uuid.uuid4()),
                migration_id=epoch.migration_id,
                record_time=epoch.record_time,
                status=SnapshotStatus.PROCESSING,
                is_delta=previous is not None,
                processing_mode=ProcessingMode.DELTA if previous else ProcessingMode.FULL,
                previous_snapshot_id=previous.id if previous else None,
                sv_url=self.config.scan_api_base_url,
            )
            self.metadata_store.create_snapshot(record)
            self.metadata_store.append_log(record.id, 'info', f"Started {record.processing_mode} snapshot",
                                           {'migration_id': epoch.migration_id, 'record_time': epoch.record_time})

        state = SyncRunState(
            snapshot_id=record.id,
            mode=record.processing_mode,
            epoch=epoch,
            acs_cursor=record.cursor_after or 0,
            pages_done=record.processed_pages or 0,
            events_done=record.processed_events or 0,
            previous_snapshot_id=record.previous_snapshot_id,
            started_at=result.started_at,
        )
        result.snapshot_id = record.id
        result.mode = state.mode
        result.previous_snapshot_id = state.previous_snapshot_id
        result.resumed = adopted is not None
        logger.info(f"Snapshot {record.id}: {state.mode} mode, migration {epoch.migration_id}")

        try:
            if state.mode == ProcessingMode.DELTA:
                self._run_delta(state, previous, result)
            else:
                self._run_full(state, resume=adopted is not None, result=result)
        except Exception as e:
            if isinstance(e, SyncCancelled):
                error_msg = f"Snapshot cancelled: {e}"
            else:
                error_msg = f"Snapshot failed: {e}"
            logger.error(error_msg, exc_info=not isinstance(e, SyncCancelled))
            self._mark_failed(state, error_msg)
            result.status = RESULT_FAILED
            result.error = error_msg
        finally:
            result.pages_fetched = state.pages_done
            result.events_processed = state.events_done
            result.updates_applied = state.updates_applied
            result.completed_at = utc_now_iso()

        return result

    def _adoptable_run(self, processing: List[SnapshotRecord], epoch: Epoch) -> Optional[SnapshotRecord]:
        """A stale full run of this exact epoch that checkpointed a cursor can be resumed."""
        if self.config.force_full_snapshot:
            return None
        for record in processing:
            if (record.processing_mode == ProcessingMode.FULL
                    and record.migration_id == epoch.migration_id
                    and record.record_time == epoch.record_time
                    and record.cursor_after is not None):
                return record
        return None

    def _mark_failed(self, state: SyncRunState, error_msg: str):
        try:
            self.metadata_store.update_snapshot(
                state.snapshot_id,
                status=SnapshotStatus.FAILED,
                error_message=error_msg,
                processed_pages=state.pages_done,
                processed_events=state.events_done,
            )
            self.metadata_store.append_log(state.snapshot_id, 'error', error_msg)
        except Exception as e:
            logger.error(f"Could not record failure of {state.snapshot_id}: {e}")

    # ========== Full mode ==========

    def _restore_checkpoint(
        self,
        state: SyncRunState,
        writers: Dict[str, ChunkedArtifactWriter],
        seen: Set[str]
    ):
        """Reload checkpointed artifacts of an adopted run: writers, seen ids, aggregates and totals."""
        for stats in self.metadata_store.list_template_stats(state.snapshot_id):
            writer = ChunkedArtifactWriter.resume(
                self.blob_store, state.snapshot_id, stats.template_id, self.config.chunk_size
            )
            writers[stats.template_id] = writer
            aggregate = TemplateAggregate()
            for record in self.codec.decode(stats.storage_path):
                raw_id = extract_raw_contract_id(record)
                if raw_id:
                    seen.add(raw_id)
                args = record.get('create_arguments') or {}
                aggregate.add_record(args)
                state.totals.add(stats.template_id, args)
            state.aggregates[stats.template_id] = aggregate
        logger.info(f"Restored {len(writers)} templates, {len(seen)} contracts from checkpoint")

    def _checkpoint(self, state: SyncRunState, writers: Dict[str, ChunkedArtifactWriter]):
        for template_id, writer in writers.items():
            writer.checkpoint()
            self.metadata_store.upsert_template_stats(TemplateStats(
                snapshot_id=state.snapshot_id,
                template_id=template_id,
                storage_path=writer.path,
                aggregate=state.aggregate_for(template_id),
            ))
        self.metadata_store.update_snapshot(
            state.snapshot_id,
            cursor_after=state.acs_cursor,
            processed_pages=state.pages_done,
            processed_events=state.events_done,
            amulet_total=state.totals.amulet_total,
            locked_total=state.totals.locked_total,
            circulating_supply=state.totals.circulating_supply,
        )
        logger.info(f"Checkpoint at after={state.acs_cursor} ({state.pages_done} pages)")

    def _run_full(self, state: SyncRunState, resume: bool, result: SyncResult):
        writers: Dict[str, ChunkedArtifactWriter] = {}
        seen: Set[str] = set()
        if resume:
            self._restore_checkpoint(state, writers, seen)

        fetcher = FullSnapshotFetcher(
            self.scan_client,
            page_size=self.config.acs_page_size,
            max_pages=self.config.max_acs_pages,
            page_retries=self.config.page_retries,
            api_delay_seconds=self.config.api_delay_seconds,
            cancel_token=self.cancel_token,
            observer=self._observer_for(state.snapshot_id, 'acs'),
            sleep=self._sleep
        )

        pages_since_checkpoint = 0
        try:
            for page in fetcher.iter_pages(
                state.epoch,
                start_after=state.acs_cursor,
                pages_done=state.pages_done,
                events_done=state.events_done,
                seen=seen
            ):
                for event in page.events:
                    template_id = event.template_id
                    writer = writers.get(template_id)
                    if writer is None:
                        writer = writers[template_id] = ChunkedArtifactWriter(
                            self.blob_store, state.snapshot_id, template_id, self.config.chunk_size
                        )
                    writer.append(event.to_record())
                    state.aggregate_for(template_id).add_record(event.create_arguments)
                    state.totals.add(template_id, event.create_arguments)

                state.acs_cursor = page.cursor_after
                state.pages_done = page.number
                state.events_done += len(page.events)
                pages_since_checkpoint += 1
                if pages_since_checkpoint >= self.config.checkpoint_pages and not page.last:
                    self._checkpoint(state, writers)
                    pages_since_checkpoint = 0
        except SyncCancelled:
            # keep what was fetched; a later run can pick it up from the cursor
            self._checkpoint(state, writers)
            raise

        for template_id, writer in writers.items():
            path = writer.finalize()
            self.metadata_store.upsert_template_stats(TemplateStats(
                snapshot_id=state.snapshot_id,
                template_id=template_id,
                storage_path=path,
                aggregate=state.aggregate_for(template_id),
            ))

        entry_count = sum(a.contract_count for a in state.aggregates.values())
        self._complete(state, result, state.totals, entry_count, len(writers))

    # ========== Delta mode ==========

    def _load_baseline(self, snapshot_id: str) -> ContractMap:
        def records():
            for stats in self.metadata_store.list_template_stats(snapshot_id):
                yield from self.codec.decode(stats.storage_path)
        return build_baseline(records())

    def _run_delta(self, state: SyncRunState, previous: SnapshotRecord, result: SyncResult):
        start = previous.update_cursor
        state.update_cursor = start
        fetcher = IncrementalUpdateFetcher(
            self.scan_client,
            page_size=self.config.updates_page_size,
            max_pages=self.config.max_update_pages,
            page_retries=self.config.page_retries,
            api_delay_seconds=self.config.api_delay_seconds,
            cancel_token=self.cancel_token,
            observer=self._observer_for(state.snapshot_id, 'updates'),
            sleep=self._sleep
        )
        burn_calculator = BurnCalculator()
        burn = BurnBreakdown()
        contracts: Optional[ContractMap] = None

        for page in fetcher.iter_pages(start):
            if page.updates and contracts is None:
                contracts = self._load_baseline(previous.id)
            for update in page.updates:
                apply_delta(contracts, update)
                burn = burn + burn_calculator.calculate_update(update)
                state.updates_applied += 1
                state.events_done += len(update.created) + len(update.archived)
            state.pages_done = page.number
            state.update_cursor = page.cursor

        if fetcher.reached_page_limit:
            self.metadata_store.append_log(state.snapshot_id, 'warning', 'Update page limit reached',
                                           {'cursor': state.update_cursor.to_dict()})

        if state.updates_applied == 0:
            logger.info(f"No new updates since snapshot {previous.id}; already up to date")
            self.metadata_store.delete_snapshot(state.snapshot_id)
            result.status = RESULT_UP_TO_DATE
            result.snapshot_id = previous.id
            result.record_time = previous.record_time
            result.entry_count = previous.entry_count
            result.amulet_total = previous.amulet_total
            result.locked_total = previous.locked_total
            result.circulating_supply = previous.circulating_supply
            result.canonical_package = previous.canonical_package
            return

        totals = SupplyTotals()
        by_template = contracts.by_template()
        paths = self.codec.encode(by_template, state.snapshot_id)
        for template_id, records in by_template.items():
            for record in records:
                totals.add(template_id, record.get('create_arguments') or {})
            self.metadata_store.upsert_template_stats(TemplateStats(
                snapshot_id=state.snapshot_id,
                template_id=template_id,
                storage_path=paths[template_id],
                aggregate=template_aggregate_for(records),
            ))

        cursor: UpdateCursor = state.update_cursor
        self.metadata_store.update_snapshot(
            state.snapshot_id,
            migration_id=cursor.migration_id if cursor.migration_id is not None else state.epoch.migration_id,
            record_time=cursor.record_time,
            last_update_id=cursor.update_id,
        )
        result.burn = burn.to_dict()
        self.metadata_store.append_log(state.snapshot_id, 'info', 'Applied ledger updates', {
            'updates_applied': state.updates_applied,
            'from_snapshot': previous.id,
            'burn': result.burn,
        })
        self._complete(state, result, totals, len(contracts), len(by_template), record_time=cursor.record_time)

    # ========== Completion ==========

    def _complete(
        self,
        state: SyncRunState,
        result: SyncResult,
        totals: SupplyTotals,
        entry_count: int,
        template_count: int,
        record_time: Optional[str] = None
    ):
        completed_at = utc_now_iso()
        self.metadata_store.update_snapshot(
            state.snapshot_id,
            status=SnapshotStatus.COMPLETED,
            cursor_after=state.acs_cursor if state.mode == ProcessingMode.FULL else None,
            processed_pages=state.pages_done,
            processed_events=state.events_done,
            amulet_total=totals.amulet_total,
            locked_total=totals.locked_total,
            circulating_supply=totals.circulating_supply,
            entry_count=entry_count,
            canonical_package=totals.canonical_package(),
            completed_at=completed_at,
        )
        self.metadata_store.append_log(state.snapshot_id, 'info', 'Snapshot completed', {
            'entry_count': entry_count,
            'templates': template_count,
        })

        result.status = RESULT_COMPLETED
        result.record_time = record_time or state.epoch.record_time
        result.entry_count = entry_count
        result.template_count = template_count
        result.amulet_total = totals.amulet_total
        result.locked_total = totals.locked_total
        result.circulating_supply = totals.circulating_supply
        result.canonical_package = totals.canonical_package()
        logger.info(
            f"Snapshot {state.snapshot_id} completed: {entry_count} contracts in {template_count} templates, "
            f"amulet {totals.amulet_total:.4f}, locked {totals.locked_total:.4f}, "
            f"circulating {totals.circulating_supply:.4f}"
        )

    # ========== Status ==========

    def get_status(self) -> Dict[str, Any]:
        """Latest runs and API reachability."""
        latest_completed = self.metadata_store.find_latest_snapshot(status=SnapshotStatus.COMPLETED)
        processing = self.metadata_store.find_snapshots(status=SnapshotStatus.PROCESSING)

        try:
            api_healthy = self.scan_client.health_check()
        except Exception:
            api_healthy = False

        return {
            'latest_completed': latest_completed.to_dict() if latest_completed else None,
            'processing': [
                dict(r.to_dict(), stale=is_stale(r, self.config.stale_after_minutes)) for r in processing
            ],
            'recent': [r.to_dict() for r in self.metadata_store.find_snapshots(limit=10)],
            'scan_api': {
                'base_url': self.config.scan_api_base_url,
                'healthy': api_healthy
            },
        }

    def close(self):
        """Clean up resources."""
        if self._scan_client is not None and self._owns_scan_client:
            self._scan_client.close()
        if self._metadata_store is not None:
            self._metadata_store.close()
        if self._blob_store is not None:
            self._blob_store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def run_sync(config: Optional[SyncConfig] = None, **kwargs) -> SyncResult:
    """Convenience function: run one synchronization with a fresh engine."""
    with SyncEngine(config, **kwargs) as engine:
        return engine.run_sync()
