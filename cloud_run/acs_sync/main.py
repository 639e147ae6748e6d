"""
Cloud Run Service for ACS Snapshot Synchronization

Serves the acs_sync control surface:
- POST /sync     run one snapshot or delta synchronization
- GET  /status   latest runs and Scan API reachability
- GET  /aggregate  amount sums over a stored snapshot
- POST /purge, /cleanup  housekeeping

Triggered by Cloud Scheduler.
"""

import logging
import os

from acs_sync.service import create_app

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = create_app()


if __name__ == '__main__':
    # Run locally for testing
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=True)
