"""
Splice Network Scan API Client

Read-only client for the ledger query surface used by the synchronization
engine: ACS snapshot timestamps, paged ACS contents and the update stream.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import ScanApiError

logger = logging.getLogger(__name__)


def build_auth_headers(config) -> Dict[str, str]:
    """Headers for SV-hosted endpoints (bearer token, API key, custom header)."""
    headers = config.auth_headers()
    if headers:
        logger.info(f"Using authentication: {', '.join(config.auth_methods())}")
    return headers


class SpliceScanClient:
    """
    Client for the Splice Network Scan API.

    Public Scan endpoints need no authentication; SV-hosted endpoints may
    require a bearer token, an API key or a custom header, passed through
    ``auth_headers``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 60,
        max_retries: int = 3,
        auth_headers: Optional[Dict[str, str]] = None
    ):
        """
        Initialize the Scan API client.

        Args:
            base_url: Base URL of the Scan API (e.g., 'https://scan.sv-1.example.com/api/scan')
            timeout: Request timeout in seconds (default: 60)
            max_retries: Retries for 429/5xx responses (default: 3)
            auth_headers: Extra headers sent with every request
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        # Transient failures (429/5xx) are retried by the transport itself
        self.session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS", "POST"],
            raise_on_status=False
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        # Content-Type is only set when a JSON body is sent
        self.session.headers.update({'Accept': 'application/json'})
        if auth_headers:
            self.session.headers.update(auth_headers)

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        timeout: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Make a request to the API.

        Returns:
            Response data as dictionary (empty for 204 / empty bodies)

        Raises:
            ScanApiError: For transport failures and non-2xx responses. The
                message includes the server's error text when available.
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        request_headers = None
        if json_data is not None:
            request_headers = {'Content-Type': 'application/json'}

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=request_headers,
                timeout=timeout or self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Request error for {method} {url}: {e}")
            raise ScanApiError(f"Request failed: {e}", url=url) from e

        if not response.ok:
            body = response.text or ''
            detail = self._error_detail(response) or response.reason or 'no details'
            logger.warning(f"HTTP {response.status_code} for {method} {url}: {detail}")
            raise ScanApiError(
                f"HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
                body=body,
                url=url
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise ScanApiError(
                f"Invalid JSON in response: {e}",
                status_code=response.status_code,
                body=response.text,
                url=url
            ) from e

    @staticmethod
    def _error_detail(response: requests.Response) -> Optional[str]:
        """Pull the server's error message out of a JSON or text body."""
        try:
            data = response.json()
        except ValueError:
            return response.text.strip() or None
        if isinstance(data, dict):
            for key in ('error', 'message', 'detail'):
                if data.get(key):
                    return str(data[key])
        return response.text.strip() or None

    # ========== State/ACS Queries ==========

    def get_acs_snapshot_timestamp(
        self,
        before: str,
        migration_id: int
    ) -> Dict[str, Any]:
        """
        Get the timestamp of the most recent snapshot before the given date.

        Args:
            before: ISO format datetime string
            migration_id: Migration ID

        Returns:
            Dictionary containing record_time
        """
        params = {
            'before': before,
            'migration_id': migration_id
        }
        return self._make_request('GET', '/v0/state/acs/snapshot-timestamp', params=params)

    def get_acs(
        self,
        migration_id: int,
        record_time: str,
        after: Optional[int] = None,
        page_size: int = 1000,
        record_time_match: str = "exact",
        templates: Optional[List[str]] = None,
        daml_value_encoding: str = "compact_json"
    ) -> Dict[str, Any]:
        """
        Get one page of the Active Contract Set at a migration id and record time.

        Args:
            migration_id: Migration ID
            record_time: Record time (ISO format)
            after: Offset cursor from the previous page
            page_size: Maximum number of contracts to return
            record_time_match: Match type for record time (default: exact)
            templates: Filter by template IDs

        Returns:
            Dictionary containing created_events, range, next_page_token
        """
        json_data: Dict[str, Any] = {
            'migration_id': migration_id,
            'record_time': record_time,
            'record_time_match': record_time_match,
            'page_size': page_size,
            'daml_value_encoding': daml_value_encoding
        }

        if after is not None:
            json_data['after'] = after
        if templates:
            json_data['templates'] = templates

        return self._make_request('POST', '/v0/state/acs', json_data=json_data)

    # ========== Update History Queries ==========

    def get_updates(
        self,
        after_migration_id: Optional[int] = None,
        after_record_time: Optional[str] = None,
        page_size: int = 500,
        daml_value_encoding: str = "compact_json"
    ) -> Dict[str, Any]:
        """
        Get update history in ascending order, paged (/v2/updates).

        Args:
            after_migration_id: Start after this migration ID
            after_record_time: Start after this record time (ISO format)
            page_size: Maximum number of updates to return

        Returns:
            Dictionary containing transactions (list of updates)
        """
        json_data: Dict[str, Any] = {
            'page_size': page_size,
            'daml_value_encoding': daml_value_encoding
        }

        if after_migration_id is not None and after_record_time is not None:
            json_data['after'] = {
                'after_migration_id': after_migration_id,
                'after_record_time': after_record_time
            }

        return self._make_request('POST', '/v2/updates', json_data=json_data)

    def get_update_by_id(
        self,
        update_id: str,
        daml_value_encoding: str = "compact_json"
    ) -> Dict[str, Any]:
        """Get a specific update by ID."""
        params = {'daml_value_encoding': daml_value_encoding}
        return self._make_request('GET', f'/v2/updates/{update_id}', params=params)

    # ========== Health/Status Endpoints ==========

    def health_check(self) -> bool:
        """
        Check if the API is accessible.

        Uses GET /v0/dso since there is no dedicated health endpoint.
        """
        try:
            self._make_request('GET', '/v0/dso')
            return True
        except ScanApiError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    # ========== Utility Methods ==========

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
