#!/usr/bin/env python3
"""
Standalone ACS Synchronization Script

Run this script manually or via cron to snapshot the Active Contract Set.
See ``python run_sync.py --help`` for all modes.

Cron example (every 30 minutes):
    */30 * * * * cd /path/to/acs-sync && python scripts/run_sync.py >> /var/log/acs-sync.log 2>&1

Environment variables:
    GOOGLE_APPLICATION_CREDENTIALS - Path to service account JSON file
    SCAN_API_BASE_URL - Scan API URL
    GCS_BUCKET - Artifact bucket
    BQ_PROJECT_ID - BigQuery project for snapshot metadata
"""

import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from acs_sync.cli import main


if __name__ == '__main__':
    sys.exit(main())
