"""
Unit tests for backup executor (tenant_backup/backup/executor.py).

Tests BackupExecutor run history, the one-job-per-requester rule and the CLI export path.
"""

import io
import json
from unittest.mock import patch

import pytest

from tenant_backup.backup import executor as executor_module
from tenant_backup.backup.catalog import build_catalog
from tenant_backup.backup.executor import (
    BackupExecutor,
    BackupInProgress,
    build_orchestrator,
    export_backup
)
from tenant_backup.backup.orchestrator import BackupOrchestrator, EmptyBackup, Unauthorized
from tenant_backup.backup.records import SqlRecordStore
from tenant_backup.backup.storage import S3ObjectStore, StorageError
from tenant_backup.models import BackupRun


@pytest.fixture
def orchestrator_factory(make_record_store, make_object_store):
    """Build orchestrators over fresh copies of the reference stores."""
    def factory(record_sets=('products', 'customers'), containers=('avatars',), **store_options):
        record_store = make_record_store(
            tables={'products': [{'id': 1}, {'id': 2}, {'id': 3}]},
            failing={'customers'}
        )
        object_store = make_object_store(
            containers={'avatars': {'a.png': b'png-a', 'thumbs/b.png': b'png-b'}},
            **store_options
        )
        return BackupOrchestrator(
            catalog=build_catalog(record_sets, containers),
            record_store=record_store,
            object_store=object_store
        )
    return factory


class TestBackupExecutor:
    """Test BackupExecutor."""

    def test_executor_initialization(self, db, orchestrator_factory):
        """Test BackupExecutor initializes correctly."""
        executor = BackupExecutor(orchestrator_factory(), requested_by='admin')

        assert executor.requested_by == 'admin'
        assert executor.run_record is None
        assert executor.archive_name.startswith('backup-')
        assert executor.archive_name.endswith('Z.zip')
        assert executor.logs == []

    def test_successful_backup_recorded(self, db, orchestrator_factory, archive_reader):
        """Test a finished job is stored with its counts and failures."""
        executor = BackupExecutor(orchestrator_factory(), requested_by='admin')

        data = b''.join(executor.stream(is_admin=True))

        record = db.session.get(BackupRun, executor.run_id)
        assert record.status == 'partial'
        assert record.requested_by == 'admin'
        assert record.archive_name == executor.archive_name
        assert record.entries_written == 3
        assert record.bytes_sent == len(data)
        assert record.completed_at is not None
        assert record.error_message is None
        assert json.loads(record.entries_failed)[0]['path'] == 'database/customers.json'
        assert 'Failed database/customers.json' in record.logs
        assert 'Backup completed' in record.logs
        assert 'storage/avatars/thumbs/b.png' in archive_reader(data)

    def test_running_record_visible_while_streaming(self, db, orchestrator_factory):
        """Test the run is visible as running while it streams."""
        executor = BackupExecutor(orchestrator_factory(), requested_by='admin')

        chunks = executor.stream(is_admin=True)
        next(chunks)

        assert db.session.get(BackupRun, executor.run_id).status == 'running'
        chunks.close()

    def test_unauthorized_creates_no_record(self, db, orchestrator_factory):
        """Test a refused job leaves no history and frees the requester."""
        orchestrator = orchestrator_factory()
        executor = BackupExecutor(orchestrator, requested_by='staff')

        with pytest.raises(Unauthorized):
            executor.stream(is_admin=False)

        assert BackupRun.query.count() == 0
        assert 'staff' not in executor_module._running_requesters
        assert orchestrator.record_store.closed

    def test_one_job_per_requester(self, db, orchestrator_factory):
        """Test a second job for the same requester is refused while the first runs."""
        first = BackupExecutor(orchestrator_factory(), requested_by='admin').stream(is_admin=True)
        next(first)

        second_orchestrator = orchestrator_factory()
        with pytest.raises(BackupInProgress):
            BackupExecutor(second_orchestrator, requested_by='admin').stream(is_admin=True)

        assert second_orchestrator.object_store.closed

        # Other requesters are independent
        other = BackupExecutor(orchestrator_factory(), requested_by='ops').stream(is_admin=True)
        b''.join(other)

        # The slot is free again once the first job ends
        b''.join(first)
        b''.join(BackupExecutor(orchestrator_factory(), requested_by='admin').stream(is_admin=True))

        assert BackupRun.query.count() == 3

    def test_cancelled_stream(self, db, orchestrator_factory):
        """Test closing the stream records a cancelled run and frees the requester."""
        executor = BackupExecutor(orchestrator_factory(), requested_by='admin')

        chunks = executor.stream(is_admin=True)
        next(chunks)
        chunks.close()

        record = db.session.get(BackupRun, executor.run_id)
        assert record.status == 'cancelled'
        assert 'cancelled' in record.error_message
        assert 'admin' not in executor_module._running_requesters

    def test_empty_backup_recorded_as_failed(self, db, orchestrator_factory):
        """Test a job that wrote nothing is stored as failed."""
        executor = BackupExecutor(
            orchestrator_factory(record_sets=('customers',), containers=()),
            requested_by='admin'
        )

        with pytest.raises(EmptyBackup):
            b''.join(executor.stream(is_admin=True))

        record = db.session.get(BackupRun, executor.run_id)
        assert record.status == 'failed'
        assert 'empty' in record.error_message
        assert 'admin' not in executor_module._running_requesters

    def test_logs_flushed_while_running(self, db, orchestrator_factory):
        """Test accumulated log lines reach the database every 5 entries."""
        executor = BackupExecutor(orchestrator_factory(), requested_by='admin')
        chunks = executor.stream(is_admin=True)
        next(chunks)

        for index in range(4):
            executor._log(f"progress {index}")

        assert 'progress 3' in db.session.get(BackupRun, executor.run_id).logs
        chunks.close()


class TestBuildOrchestrator:
    """Test build_orchestrator wiring."""

    def test_defaults_to_app_database(self, app, db, mock_s3):
        """Test record sets are read from the app database when no tenant URL is set."""
        app.config['TENANT_DATABASE_URL'] = None
        orchestrator = build_orchestrator(app.config)

        assert isinstance(orchestrator.record_store, SqlRecordStore)
        assert orchestrator.record_store.engine is db.engine
        assert orchestrator.catalog.to_dict() == {
            'record_sets': ['products', 'customers'],
            'containers': ['avatars']
        }
        orchestrator.close()

    def test_tenant_database(self, backup_app):
        """Test TENANT_DATABASE_URL selects a separate database."""
        orchestrator = build_orchestrator(backup_app.config)

        assert str(orchestrator.record_store.engine.url) == backup_app.config['TENANT_DATABASE_URL']
        orchestrator.close()

    def test_container_discovery(self, app, db, mock_s3):
        """Test discovery replaces the configured container list."""
        mock_s3.create_bucket(Bucket='invoices')
        app.config['BACKUP_DISCOVER_CONTAINERS'] = True

        orchestrator = build_orchestrator(app.config)

        assert [ref.name for ref in orchestrator.catalog.containers] == ['avatars', 'invoices']
        orchestrator.close()

    def test_invalid_catalog_releases_stores(self, backup_app):
        """Test both stores are closed when the configured catalog is rejected."""
        backup_app.config['BACKUP_CONTAINERS'] = ['avatars', 'avatars']

        with patch.object(SqlRecordStore, 'close', autospec=True) as record_close, \
                patch.object(S3ObjectStore, 'close', autospec=True) as object_close:
            with pytest.raises(ValueError, match='Duplicate'):
                build_orchestrator(backup_app.config)

        record_close.assert_called_once()
        object_close.assert_called_once()

    def test_failed_discovery_releases_stores(self, backup_app):
        """Test both stores are closed when container discovery fails."""
        backup_app.config['BACKUP_DISCOVER_CONTAINERS'] = True

        with patch.object(S3ObjectStore, 'list_containers', side_effect=StorageError('AccessDenied')), \
                patch.object(SqlRecordStore, 'close', autospec=True) as record_close, \
                patch.object(S3ObjectStore, 'close', autospec=True) as object_close:
            with pytest.raises(StorageError):
                build_orchestrator(backup_app.config)

        record_close.assert_called_once()
        object_close.assert_called_once()


class TestExportBackup:
    """Test export_backup end to end against SQLite and mocked S3."""

    def test_writes_archive(self, backup_app, archive_reader):
        """Test the archive is written to the output file and the run recorded."""
        output = io.BytesIO()

        record = export_backup(output)

        entries = archive_reader(output.getvalue())
        assert set(entries) == {
            'database/products.json',
            'storage/avatars/a.png',
            'storage/avatars/thumbs/b.png',
            'manifest.json',
        }
        assert [row['name'] for row in json.loads(entries['database/products.json'])] == [
            'Chair', 'Table', 'Lamp'
        ]
        assert record.requested_by == 'cli'
        assert record.status == 'partial'
        assert record.failures == [
            {'path': 'database/customers.json', 'reason': 'Record set does not exist: customers'}
        ]
