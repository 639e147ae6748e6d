"""
Error types for the ACS synchronization engine.

- SyncError: Base exception
- ConfigurationError: Missing endpoint, bucket, project or secret
- ScanApiError: Transport or HTTP failure talking to the Scan API
- NoEpochFound: No migration answered the snapshot-timestamp probe
- StalledPaginationError: A page did not advance the cursor
- PaginationLimitError: The safety page ceiling was reached
- SyncInProgressError: Another run owns the cursor
- SyncCancelled: The run-level cancellation flag was set
- BlobNotFoundError: Artifact missing from blob storage
"""

import re
from typing import Any, Dict, Optional, Tuple

RANGE_ERROR_RE = re.compile(r"range\s*\((\d+)\s*to\s*(\d+)\)", re.IGNORECASE)


class SyncError(Exception):
    """Base exception for all synchronization errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}


class ConfigurationError(SyncError):
    """Configuration is incomplete; raised before any network call."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details={'field': field_name})
        self.field_name = field_name


class ScanApiError(SyncError):
    """
    A Scan API request failed.

    The message carries the server's own error text when one was returned, so
    callers can recognise vendor soft-errors such as "range (X to Y)".
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        url: Optional[str] = None
    ):
        super().__init__(
            message,
            code="SCAN_API_ERROR",
            details={'status_code': status_code, 'url': url}
        )
        self.status_code = status_code
        self.body = body
        self.url = url

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500

    def resumable_range(self) -> Optional[Tuple[int, int]]:
        """Return (start, end) if the error text encodes a valid range."""
        return parse_range_error(self.message) or parse_range_error(self.body or "")


class NoEpochFound(SyncError):
    """No migration id returned a record time."""

    def __init__(self, message: str = "No valid migration found."):
        super().__init__(message, code="NO_EPOCH_FOUND")


class StalledPaginationError(SyncError):
    """The pagination cursor did not advance between two pages."""

    def __init__(self, cursor: Any, pages_done: int, events_done: int):
        super().__init__(
            f"Pagination not progressing (cursor unchanged at {cursor!r} after {pages_done} pages)",
            code="STALLED_PAGINATION",
            details={'cursor': cursor, 'pages_done': pages_done, 'events_done': events_done}
        )
        self.cursor = cursor
        self.pages_done = pages_done
        self.events_done = events_done


class PaginationLimitError(SyncError):
    """The safety page ceiling was reached before the endpoint signalled completion."""

    def __init__(self, max_pages: int, cursor: Any):
        super().__init__(
            f"Reached maximum page limit ({max_pages}) at cursor {cursor!r}",
            code="PAGINATION_LIMIT",
            details={'max_pages': max_pages, 'cursor': cursor}
        )
        self.max_pages = max_pages
        self.cursor = cursor


class SyncInProgressError(SyncError):
    """A fresh processing run already exists."""

    def __init__(self, snapshot_id: str):
        super().__init__(
            f"Snapshot {snapshot_id} is already processing",
            code="SYNC_IN_PROGRESS",
            details={'snapshot_id': snapshot_id}
        )
        self.snapshot_id = snapshot_id


class SyncCancelled(SyncError):
    """Cancellation was requested; no new pages are scheduled."""

    def __init__(self, pages_done: int = 0, events_done: int = 0):
        super().__init__(
            f"Cancelled after {pages_done} pages ({events_done} events)",
            code="SYNC_CANCELLED",
            details={'pages_done': pages_done, 'events_done': events_done}
        )
        self.pages_done = pages_done
        self.events_done = events_done


class BlobNotFoundError(SyncError):
    """Requested artifact does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Blob not found: {path}", code="BLOB_NOT_FOUND", details={'path': path})
        self.path = path


def parse_range_error(message: str) -> Optional[Tuple[int, int]]:
    """
    Extract a contiguous range from an error message like "range (500 to 1000)".

    Returns None when the text carries no range or the range is inverted.
    """
    if not message:
        return None
    match = RANGE_ERROR_RE.search(message)
    if not match:
        return None
    start, end = int(match.group(1)), int(match.group(2))
    if end < start:
        return None
    return start, end
