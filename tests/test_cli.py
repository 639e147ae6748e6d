"""
Tests for the command-line entry point.
"""

import json

import pytest

from acs_sync import cli
from acs_sync.models import SnapshotRecord

from conftest import AMULET_TID, FakeScanClient, amulet_args, created_event


@pytest.fixture(autouse=True)
def memory_env(monkeypatch):
    monkeypatch.setenv('STORAGE_BACKEND', 'memory')
    monkeypatch.setenv('METADATA_BACKEND', 'memory')
    monkeypatch.setenv('API_DELAY_SECONDS', '0')
    monkeypatch.delenv('SYNC_TRIGGER_SECRET', raising=False)
    monkeypatch.setattr(cli, 'configure_logging', lambda verbose=False: None)


@pytest.fixture
def scan_client():
    return FakeScanClient(migrations={1: '2024-05-01T10:00:00Z'}, contracts=[
        created_event('c1', AMULET_TID, amulet_args('10.0')),
    ])


@pytest.fixture
def patched_engine(monkeypatch, make_engine):
    """Route every engine the CLI builds to the shared fakes."""
    built = []

    def factory(config, **kwargs):
        engine = make_engine(config=config, **kwargs)
        built.append(engine)
        return engine

    monkeypatch.setattr(cli, 'SyncEngine', factory)
    return built


class TestParser:
    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(['--status', '--cleanup'])

    def test_overrides_applied(self):
        args = cli.build_parser().parse_args(
            ['--force-full', '--migration-id', '3', '--page-size', '50', '--storage', 'local']
        )
        config = cli.get_config(args)
        assert config.force_full_snapshot is True
        assert config.migration_id_override == 3
        assert config.acs_page_size == 50
        assert config.storage_backend == 'local'


class TestExitCodes:
    """Tests for main() exit codes."""

    def test_successful_run(self, patched_engine):
        assert cli.main([]) == cli.EXIT_OK
        assert len(patched_engine) == 1

    def test_configuration_error(self, monkeypatch, patched_engine):
        monkeypatch.setenv('STORAGE_BACKEND', 'gcs')
        monkeypatch.delenv('GCS_BUCKET', raising=False)
        assert cli.main([]) == cli.EXIT_CONFIG
        assert patched_engine == []

    def test_in_progress(self, patched_engine, metadata_store):
        metadata_store.create_snapshot(SnapshotRecord(id='live', migration_id=1))
        assert cli.main([]) == cli.EXIT_IN_PROGRESS

    def test_failed_run(self, patched_engine):
        """A full page at the page ceiling fails the run."""
        assert cli.main(['--max-pages', '1', '--page-size', '1']) == cli.EXIT_FAILED

    def test_unexpected_error(self, monkeypatch):
        def explode(config, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(cli, 'SyncEngine', explode)
        assert cli.main(['--status']) == cli.EXIT_FAILED


class TestModes:
    """Tests for the non-sync modes."""

    def test_status_prints_json(self, patched_engine, capsys):
        assert cli.main(['--status']) == cli.EXIT_OK
        output = capsys.readouterr().out
        status = json.loads(output)
        assert status['processing'] == []

    def test_aggregate_without_snapshot(self, patched_engine):
        assert cli.main(['--aggregate', 'Splice.Amulet:Amulet']) == cli.EXIT_FAILED

    def test_aggregate_after_sync(self, patched_engine, capsys):
        cli.main([])
        capsys.readouterr()
        assert cli.main(['--aggregate', 'Splice.Amulet:Amulet']) == cli.EXIT_OK
        output = capsys.readouterr().out
        result = json.loads(output)
        assert result['sum'] == pytest.approx(10.0)

    def test_cleanup(self, patched_engine, capsys):
        assert cli.main(['--cleanup']) == cli.EXIT_OK
        output = capsys.readouterr().out
        assert json.loads(output) == {'timed_out': []}
