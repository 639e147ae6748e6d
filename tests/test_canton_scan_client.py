"""
Tests for the Scan API client.

The HTTP session is mocked; no network access.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from acs_sync.canton_scan_client import SpliceScanClient, build_auth_headers
from acs_sync.config import SyncConfig
from acs_sync.errors import ScanApiError


def response(status=200, json_data=None, text=None, reason='OK'):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.reason = reason
    if json_data is not None:
        resp.json.return_value = json_data
        resp.text = text if text is not None else str(json_data)
        resp.content = b'x'
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ''
        resp.content = (text or '').encode()
    return resp


@pytest.fixture
def client():
    return SpliceScanClient('https://scan.example.com/api/scan/', auth_headers={'x-api-key': 'k'})


class TestRequests:
    """Tests for request construction."""

    def test_get_acs_posts_cursor(self, client):
        with patch.object(client.session, 'request', return_value=response(json_data={'created_events': []})) as req:
            client.get_acs(migration_id=3, record_time='T', after=500, page_size=10)

        kwargs = req.call_args.kwargs
        assert kwargs['method'] == 'POST'
        assert kwargs['url'] == 'https://scan.example.com/api/scan/v0/state/acs'
        assert kwargs['json']['after'] == 500
        assert kwargs['json']['record_time_match'] == 'exact'
        assert kwargs['headers'] == {'Content-Type': 'application/json'}

    def test_get_updates_cursor_only_when_complete(self, client):
        with patch.object(client.session, 'request', return_value=response(json_data={'transactions': []})) as req:
            client.get_updates(page_size=5)
            assert 'after' not in req.call_args.kwargs['json']
            client.get_updates(after_migration_id=1, after_record_time='T', page_size=5)
            assert req.call_args.kwargs['json']['after'] == {'after_migration_id': 1, 'after_record_time': 'T'}

    def test_snapshot_timestamp_params(self, client):
        with patch.object(client.session, 'request', return_value=response(json_data={'record_time': 'T'})) as req:
            assert client.get_acs_snapshot_timestamp('B', 2) == {'record_time': 'T'}
        assert req.call_args.kwargs['params'] == {'before': 'B', 'migration_id': 2}

    def test_auth_headers_on_session(self, client):
        assert client.session.headers['x-api-key'] == 'k'


class TestErrors:
    """Tests for error translation."""

    def test_server_error_text_is_kept(self, client):
        """The server's message survives so range recovery can parse it."""
        resp = response(status=400, json_data={'error': 'Requested range (500 to 1000) unavailable'}, reason='Bad Request')
        with patch.object(client.session, 'request', return_value=resp):
            with pytest.raises(ScanApiError) as exc_info:
                client.get_acs(1, 'T')

        error = exc_info.value
        assert error.status_code == 400
        assert 'range (500 to 1000)' in str(error)
        assert error.resumable_range() == (500, 1000)
        assert not error.is_transient

    def test_transport_error_is_transient(self, client):
        with patch.object(client.session, 'request', side_effect=requests.exceptions.ConnectionError("down")):
            with pytest.raises(ScanApiError) as exc_info:
                client.get_acs(1, 'T')
        assert exc_info.value.status_code is None
        assert exc_info.value.is_transient

    def test_empty_body_is_empty_dict(self, client):
        with patch.object(client.session, 'request', return_value=response(status=204)):
            assert client.get_update_by_id('u1') == {}

    def test_health_check(self, client):
        with patch.object(client.session, 'request', return_value=response(status=503, reason='Unavailable')):
            assert client.health_check() is False
        with patch.object(client.session, 'request', return_value=response(json_data={'dso': {}})):
            assert client.health_check() is True


class TestAuthHeaders:
    def test_all_methods_combined(self):
        config = SyncConfig(auth_bearer='tok', api_key='key', auth_header_name='X-Custom', auth_header_value='v')
        assert build_auth_headers(config) == {
            'Authorization': 'Bearer tok',
            'x-api-key': 'key',
            'X-Custom': 'v',
        }

    def test_public_endpoint_needs_none(self):
        assert build_auth_headers(SyncConfig()) == {}
