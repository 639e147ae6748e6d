"""
Configuration for the ACS synchronization engine.

Values come from dataclass defaults, environment variables (Cloud Run / cron)
or command-line overrides, in that order of increasing precedence.
"""

import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .errors import ConfigurationError

DEFAULT_SCAN_API_BASE_URL = "https://scan.sv-1.global.canton.network.sync.global/api/scan"

STORAGE_BACKENDS = ('gcs', 'local', 'memory')
METADATA_BACKENDS = ('bigquery', 'memory')

# Secrets are never echoed back by to_dict()
_SECRET_FIELDS = ('auth_bearer', 'api_key', 'auth_header_value', 'trigger_secret')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", field_name=name)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}", field_name=name)


@dataclass
class SyncConfig:
    """Configuration for a synchronization run."""
    # Scan API configuration
    scan_api_base_url: str = DEFAULT_SCAN_API_BASE_URL
    scan_api_timeout: int = 60
    scan_api_max_retries: int = 3

    # Ledger authentication
    auth_bearer: Optional[str] = None
    api_key: Optional[str] = None
    auth_header_name: Optional[str] = None
    auth_header_value: Optional[str] = None

    # Discovery overrides
    migration_id_override: Optional[int] = None
    record_time_override: Optional[str] = None
    force_full_snapshot: bool = False

    # Pagination
    acs_page_size: int = 1000
    updates_page_size: int = 500
    max_acs_pages: int = 10000
    max_update_pages: int = 1000
    page_retries: int = 3
    api_delay_seconds: float = 0.1

    # Artifacts
    chunk_size: int = 5000  # entries per chunk file
    checkpoint_pages: int = 50
    max_concurrency: int = 6

    # Run ownership
    stale_after_minutes: int = 30

    # Storage
    storage_backend: str = 'gcs'
    gcs_bucket: Optional[str] = None
    local_storage_dir: str = './acs_data'
    metadata_backend: str = 'bigquery'
    bq_project_id: Optional[str] = None
    bq_dataset: str = 'acs'

    # Control surface
    trigger_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'SyncConfig':
        """Load configuration from environment variables."""
        defaults = cls()
        return cls(
            scan_api_base_url=os.environ.get('SCAN_API_BASE_URL', defaults.scan_api_base_url),
            scan_api_timeout=_env_int('SCAN_API_TIMEOUT', defaults.scan_api_timeout),
            scan_api_max_retries=_env_int('SCAN_API_MAX_RETRIES', defaults.scan_api_max_retries),
            auth_bearer=os.environ.get('SV_AUTH_BEARER') or None,
            api_key=os.environ.get('SV_API_KEY') or None,
            auth_header_name=os.environ.get('SV_AUTH_HEADER_NAME') or None,
            auth_header_value=os.environ.get('SV_AUTH_HEADER_VALUE') or None,
            migration_id_override=_env_int('SV_MIGRATION_ID', None),
            record_time_override=os.environ.get('SV_RECORD_TIME') or None,
            force_full_snapshot=_env_bool('FORCE_FULL_SNAPSHOT', False),
            acs_page_size=_env_int('ACS_PAGE_SIZE', defaults.acs_page_size),
            updates_page_size=_env_int('UPDATES_PAGE_SIZE', defaults.updates_page_size),
            max_acs_pages=_env_int('MAX_ACS_PAGES', defaults.max_acs_pages),
            max_update_pages=_env_int('MAX_UPDATE_PAGES', defaults.max_update_pages),
            page_retries=_env_int('PAGE_RETRIES', defaults.page_retries),
            api_delay_seconds=_env_float('API_DELAY_SECONDS', defaults.api_delay_seconds),
            chunk_size=_env_int('CHUNK_SIZE', defaults.chunk_size),
            checkpoint_pages=_env_int('CHECKPOINT_PAGES', defaults.checkpoint_pages),
            max_concurrency=_env_int('MAX_CONCURRENCY', defaults.max_concurrency),
            stale_after_minutes=_env_int('STALE_AFTER_MINUTES', defaults.stale_after_minutes),
            storage_backend=os.environ.get('STORAGE_BACKEND', defaults.storage_backend),
            gcs_bucket=os.environ.get('GCS_BUCKET') or None,
            local_storage_dir=os.environ.get('LOCAL_STORAGE_DIR', defaults.local_storage_dir),
            metadata_backend=os.environ.get('METADATA_BACKEND', defaults.metadata_backend),
            bq_project_id=os.environ.get('BQ_PROJECT_ID') or None,
            bq_dataset=os.environ.get('BQ_DATASET', defaults.bq_dataset),
            trigger_secret=os.environ.get('SYNC_TRIGGER_SECRET') or None,
        )

    def validate(self) -> 'SyncConfig':
        """
        Check the configuration before any network call is made.

        Raises:
            ConfigurationError: describing the first problem found
        """
        if not self.scan_api_base_url or not self.scan_api_base_url.startswith(('http://', 'https://')):
            raise ConfigurationError(
                f"SCAN_API_BASE_URL must be an http(s) URL, got {self.scan_api_base_url!r}",
                field_name='scan_api_base_url'
            )
        if self.auth_header_name and not self.auth_header_value:
            raise ConfigurationError(
                "SV_AUTH_HEADER_NAME is set but SV_AUTH_HEADER_VALUE is missing",
                field_name='auth_header_value'
            )

        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend {self.storage_backend!r} (expected one of {STORAGE_BACKENDS})",
                field_name='storage_backend'
            )
        if self.storage_backend == 'gcs' and not self.gcs_bucket:
            raise ConfigurationError("GCS_BUCKET is required for the gcs storage backend", field_name='gcs_bucket')

        if self.metadata_backend not in METADATA_BACKENDS:
            raise ConfigurationError(
                f"Unknown metadata backend {self.metadata_backend!r} (expected one of {METADATA_BACKENDS})",
                field_name='metadata_backend'
            )
        if self.metadata_backend == 'bigquery' and not self.bq_project_id:
            raise ConfigurationError("BQ_PROJECT_ID is required for the bigquery metadata backend", field_name='bq_project_id')

        for name in ('acs_page_size', 'updates_page_size', 'max_acs_pages', 'max_update_pages',
                     'chunk_size', 'checkpoint_pages', 'stale_after_minutes', 'scan_api_timeout'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", field_name=name)
        if self.page_retries < 0:
            raise ConfigurationError("page_retries must not be negative", field_name='page_retries')

        # observed pool sizes stay small; keep within a sane window
        self.max_concurrency = max(1, min(32, self.max_concurrency))
        return self

    def auth_headers(self) -> Dict[str, str]:
        """Headers for authenticated Scan API access."""
        headers = {}
        if self.auth_bearer:
            headers['Authorization'] = f"Bearer {self.auth_bearer}"
        if self.api_key:
            headers['x-api-key'] = self.api_key
        if self.auth_header_name and self.auth_header_value:
            headers[self.auth_header_name] = self.auth_header_value
        return headers

    def auth_methods(self):
        methods = []
        if self.auth_bearer:
            methods.append('Bearer token')
        if self.api_key:
            methods.append('API key')
        if self.auth_header_name:
            methods.append(f"Custom header ({self.auth_header_name})")
        return methods

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _SECRET_FIELDS:
            if data.get(name):
                data[name] = '***'
        return data
