"""
Command-line entry point for ACS synchronization.

Usage:
    # Run one synchronization (delta when a completed snapshot exists)
    acs-sync

    # Force a full snapshot
    acs-sync --force-full

    # Show status
    acs-sync --status

    # Sum amounts of a template suffix in the latest completed snapshot
    acs-sync --aggregate Splice.Amulet:Amulet

    # Housekeeping
    acs-sync --cleanup
    acs-sync --purge <snapshot_id>

Exit codes:
    0 success, 1 failed run, 2 configuration error, 3 already in progress,
    130 interrupted
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .aggregator import pick_amount, pick_locked_amount
from .concurrency import CancellationToken
from .config import SyncConfig
from .errors import ConfigurationError, SyncInProgressError
from .maintenance import cleanup_stale_snapshots, purge_incomplete, purge_snapshot
from .models import SnapshotStatus
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_IN_PROGRESS = 3
EXIT_INTERRUPTED = 130


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def get_config(args) -> SyncConfig:
    """Build configuration from environment and command line args."""
    config = SyncConfig.from_env()
    if args.force_full:
        config.force_full_snapshot = True
    if args.migration_id is not None:
        config.migration_id_override = args.migration_id
    if args.record_time:
        config.record_time_override = args.record_time
    if args.storage:
        config.storage_backend = args.storage
    if args.local_dir:
        config.local_storage_dir = args.local_dir
    if args.page_size:
        config.acs_page_size = args.page_size
    if args.max_pages:
        config.max_acs_pages = args.max_pages
    if args.concurrency:
        config.max_concurrency = args.concurrency
    return config


def run(config: SyncConfig) -> int:
    """Run one synchronization; Ctrl-C stops at the next page boundary."""
    logger.info("=" * 50)
    logger.info("ACS Snapshot Synchronization")
    logger.info("=" * 50)
    logger.info(f"Scan API: {config.scan_api_base_url}")
    logger.info(f"Storage: {config.storage_backend}, metadata: {config.metadata_backend}")

    token = CancellationToken()
    restore = token.install_signal_handlers()
    try:
        with SyncEngine(config, cancel_token=token) as engine:
            result = engine.run_sync()
    finally:
        restore()

    logger.info("")
    logger.info("=" * 50)
    logger.info("Results")
    logger.info("=" * 50)
    logger.info(f"Status: {result.status} ({result.mode})")
    logger.info(f"Snapshot: {result.snapshot_id}")
    logger.info(f"Pages fetched: {result.pages_fetched}")
    logger.info(f"Events processed: {result.events_processed}")
    logger.info(f"Entries: {result.entry_count}")
    logger.info(f"Circulating supply: {result.circulating_supply}")
    if result.burn:
        logger.info(f"Burn: {result.burn}")
    if result.error:
        logger.error(f"Error: {result.error}")

    if token.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_OK if result.success else EXIT_FAILED


def show_status(config: SyncConfig) -> int:
    with SyncEngine(config) as engine:
        status = engine.get_status()
    print(json.dumps(status, indent=2, default=str))
    return EXIT_OK


def show_aggregate(config: SyncConfig, suffix: str, snapshot_id: Optional[str], locked: bool) -> int:
    with SyncEngine(config) as engine:
        if not snapshot_id:
            latest = engine.metadata_store.find_latest_snapshot(status=SnapshotStatus.COMPLETED)
            if latest is None:
                logger.error("No completed snapshot to aggregate")
                return EXIT_FAILED
            snapshot_id = latest.id
        total = engine.aggregator.sum(snapshot_id, suffix, pick_locked_amount if locked else pick_amount)
    print(json.dumps(dict(total.to_dict(), snapshot_id=snapshot_id, suffix=suffix), indent=2))
    return EXIT_OK


def purge(config: SyncConfig, snapshot_id: str) -> int:
    with SyncEngine(config) as engine:
        if snapshot_id == 'incomplete':
            result = purge_incomplete(engine.blob_store, engine.metadata_store,
                                      stale_after_minutes=config.stale_after_minutes)
        else:
            result = purge_snapshot(engine.blob_store, engine.metadata_store, snapshot_id)
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK


def cleanup(config: SyncConfig) -> int:
    with SyncEngine(config) as engine:
        timed_out = cleanup_stale_snapshots(engine.metadata_store, config.stale_after_minutes)
    print(json.dumps({'timed_out': timed_out}, indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='ACS snapshot and delta synchronization',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    # Mode selection
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument('--status', action='store_true', help='Show synchronization status')
    mode_group.add_argument('--aggregate', metavar='SUFFIX', help='Sum amounts of templates matching SUFFIX')
    mode_group.add_argument('--purge', metavar='ID', help="Delete a snapshot (or 'incomplete' for all failed runs)")
    mode_group.add_argument('--cleanup', action='store_true', help='Time out stale processing runs')

    # Run settings
    parser.add_argument('--force-full', action='store_true', help='Take a full snapshot even if a delta is possible')
    parser.add_argument('--migration-id', type=int, help='Use this migration id instead of probing')
    parser.add_argument('--record-time', help='Use this snapshot record time instead of resolving it')
    parser.add_argument('--snapshot-id', help='Snapshot for --aggregate (default: latest completed)')
    parser.add_argument('--locked', action='store_true', help='With --aggregate: read LockedAmulet amounts')
    parser.add_argument('--storage', choices=('gcs', 'local', 'memory'), help='Blob storage backend')
    parser.add_argument('--local-dir', help='Directory for the local storage backend')
    parser.add_argument('--page-size', type=int, help='Contracts per ACS page')
    parser.add_argument('--max-pages', type=int, help='ACS page ceiling')
    parser.add_argument('--concurrency', type=int, help='Parallel chunk transfers')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = get_config(args).validate()
        if args.status:
            return show_status(config)
        elif args.aggregate:
            return show_aggregate(config, args.aggregate, args.snapshot_id, args.locked)
        elif args.purge:
            return purge(config, args.purge)
        elif args.cleanup:
            return cleanup(config)
        else:
            return run(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except SyncInProgressError as e:
        logger.warning(str(e))
        return EXIT_IN_PROGRESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
