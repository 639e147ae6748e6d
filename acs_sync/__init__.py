"""
ACS snapshot/delta synchronization for Canton Network Scan data.
"""

from .config import SyncConfig
from .errors import (
    BlobNotFoundError,
    ConfigurationError,
    NoEpochFound,
    PaginationLimitError,
    ScanApiError,
    StalledPaginationError,
    SyncCancelled,
    SyncError,
    SyncInProgressError,
)
from .sync_engine import SyncEngine, SyncResult, run_sync

__all__ = [
    'SyncConfig',
    'SyncEngine',
    'SyncResult',
    'run_sync',
    'SyncError',
    'ConfigurationError',
    'ScanApiError',
    'NoEpochFound',
    'StalledPaginationError',
    'PaginationLimitError',
    'SyncInProgressError',
    'SyncCancelled',
    'BlobNotFoundError',
]
