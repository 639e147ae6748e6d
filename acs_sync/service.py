"""
HTTP control surface for the ACS synchronization engine.

Flask application that provides endpoints for:
- Triggering a synchronization run (Cloud Scheduler / manual)
- Run status and supply aggregation over stored snapshots
- Stale-run cleanup and snapshot purge
"""

import hmac
import logging
from typing import Callable, Optional

from flask import Flask, jsonify, request

from .aggregator import AMULET_SUFFIX, pick_amount, pick_locked_amount
from .config import SyncConfig
from .errors import ConfigurationError, SyncInProgressError
from .maintenance import cleanup_stale_snapshots, purge_incomplete, purge_snapshot
from .models import SnapshotStatus
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

SECRET_HEADER = 'X-Sync-Secret'


def _authorized(config: SyncConfig, body: dict) -> bool:
    if not config.trigger_secret:
        return True
    supplied = request.headers.get(SECRET_HEADER) or body.get('secret') or ''
    return hmac.compare_digest(str(supplied), config.trigger_secret)


def create_app(
    config_factory: Callable[[], SyncConfig] = SyncConfig.from_env,
    engine_factory: Optional[Callable[[SyncConfig], SyncEngine]] = None
) -> Flask:
    """
    Build the Flask app.

    ``engine_factory`` defaults to ``SyncEngine(config)``; a fresh engine is
    built per request and closed afterwards.
    """
    app = Flask(__name__)
    engine_factory = engine_factory or SyncEngine

    def unauthorized():
        logger.warning(f"Rejected {request.path}: bad or missing trigger secret")
        return jsonify({'status': 'error', 'message': 'unauthorized'}), 401

    @app.route('/', methods=['GET'])
    def health():
        """Health check endpoint."""
        return jsonify({'status': 'healthy', 'service': 'acs-sync'}), 200

    @app.route('/sync', methods=['POST', 'GET'])
    def sync():
        """
        Run one synchronization.

        Request body (optional JSON):
        {
            "force_full": false,
            "secret": "..."
        }
        """
        logger.info("Synchronization triggered")
        body = request.get_json(silent=True) or {}

        try:
            config = config_factory()
            if not _authorized(config, body):
                return unauthorized()
            if body.get('force_full'):
                config.force_full_snapshot = True

            with engine_factory(config) as engine:
                result = engine.run_sync()

            return jsonify({
                'status': 'success' if result.success else 'error',
                'result': result.to_dict()
            }), 200 if result.success else 500

        except SyncInProgressError as e:
            logger.info(f"Sync skipped: {e}")
            return jsonify({
                'status': 'in_progress',
                'snapshot_id': e.snapshot_id,
                'message': str(e)
            }), 409
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return jsonify({'status': 'error', 'message': str(e)}), 500
        except Exception as e:
            logger.error(f"Sync failed: {str(e)}", exc_info=True)
            return jsonify({'status': 'error', 'message': str(e)}), 500

    @app.route('/status', methods=['GET'])
    def status():
        """Latest runs and API reachability."""
        try:
            config = config_factory()
            with engine_factory(config) as engine:
                sync_status = engine.get_status()
            return jsonify({'status': 'success', 'sync_status': sync_status}), 200
        except Exception as e:
            logger.error(f"Status check failed: {str(e)}", exc_info=True)
            return jsonify({'status': 'error', 'message': str(e)}), 500

    @app.route('/aggregate', methods=['GET'])
    def aggregate():
        """
        Sum amounts over a stored snapshot.

        Query: ``suffix`` (template suffix, default Amulet), ``snapshot_id``
        (default: latest completed), ``locked=true`` to read LockedAmulet amounts,
        ``supply=true`` for the full circulating-supply summary.
        """
        suffix = request.args.get('suffix', AMULET_SUFFIX)
        try:
            config = config_factory()
            with engine_factory(config) as engine:
                snapshot_id = request.args.get('snapshot_id')
                if not snapshot_id:
                    latest = engine.metadata_store.find_latest_snapshot(status=SnapshotStatus.COMPLETED)
                    if latest is None:
                        return jsonify({'status': 'error', 'message': 'no completed snapshot'}), 404
                    snapshot_id = latest.id

                if request.args.get('supply', '').lower() == 'true':
                    return jsonify({'status': 'success', 'supply': engine.aggregator.supply_summary(snapshot_id)}), 200

                pick_fn = pick_locked_amount if request.args.get('locked', '').lower() == 'true' else pick_amount
                total = engine.aggregator.sum(snapshot_id, suffix, pick_fn)
            return jsonify({
                'status': 'success',
                'snapshot_id': snapshot_id,
                'suffix': suffix,
                'result': total.to_dict()
            }), 200
        except Exception as e:
            logger.error(f"Aggregation failed: {str(e)}", exc_info=True)
            return jsonify({'status': 'error', 'message': str(e)}), 500

    @app.route('/purge', methods=['POST'])
    def purge():
        """
        Delete a snapshot, or every failed/timed-out snapshot.

        Request body: {"snapshot_id": "..."} or {"incomplete": true}
        """
        body = request.get_json(silent=True) or {}
        try:
            config = config_factory()
            if not _authorized(config, body):
                return unauthorized()
            with engine_factory(config) as engine:
                if body.get('snapshot_id'):
                    result = purge_snapshot(engine.blob_store, engine.metadata_store, body['snapshot_id'])
                elif body.get('incomplete'):
                    result = purge_incomplete(
                        engine.blob_store,
                        engine.metadata_store,
                        stale_after_minutes=config.stale_after_minutes
                    )
                else:
                    return jsonify({'status': 'error', 'message': 'snapshot_id or incomplete required'}), 400
            return jsonify({'status': 'success', 'purged': result.to_dict()}), 200
        except ValueError as e:
            return jsonify({'status': 'error', 'message': str(e)}), 400
        except Exception as e:
            logger.error(f"Purge failed: {str(e)}", exc_info=True)
            return jsonify({'status': 'error', 'message': str(e)}), 500

    @app.route('/cleanup', methods=['POST', 'GET'])
    def cleanup():
        """Mark stale processing runs as timed out."""
        body = request.get_json(silent=True) or {}
        try:
            config = config_factory()
            if not _authorized(config, body):
                return unauthorized()
            with engine_factory(config) as engine:
                timed_out = cleanup_stale_snapshots(engine.metadata_store, config.stale_after_minutes)
            return jsonify({'status': 'success', 'timed_out': timed_out}), 200
        except Exception as e:
            logger.error(f"Cleanup failed: {str(e)}", exc_info=True)
            return jsonify({'status': 'error', 'message': str(e)}), 500

    return app
