"""
Backup executor - runs one export and keeps its history.

Workflow:
1. Check authorization (before anything touches a data source)
2. Claim the requester's job slot (one running backup per requester)
3. Create BackupRun record (status: running)
4. Relay archive chunks from the orchestrator to the caller
5. Update BackupRun (status: success/partial/failed/cancelled) with the job result
"""

import json
import threading
from datetime import datetime
from typing import Iterator, Optional

from flask import current_app

from tenant_backup import db
from tenant_backup.models import BackupRun
from .archive import generate_archive_filename
from .catalog import catalog_from_config
from .orchestrator import BackupError, BackupOrchestrator, JobResult
from .records import SqlRecordStore
from .storage import S3ObjectStore

# Requesters with a backup in progress in this process
_running_requesters = set()
_running_lock = threading.Lock()


class BackupInProgress(BackupError):
    """Raised when a requester starts a second backup before the first finished."""
    pass


def build_orchestrator(app_config) -> BackupOrchestrator:
    """
    Create an orchestrator with fresh collaborators for one job.

    Args:
        app_config: Flask config mapping

    Returns:
        BackupOrchestrator wired to the tenant database and object storage
    """
    tenant_url = app_config.get('TENANT_DATABASE_URL')
    if tenant_url:
        record_store = SqlRecordStore.from_url(tenant_url)
    else:
        record_store = SqlRecordStore(db.engine)

    try:
        object_store = S3ObjectStore(
            access_key=app_config.get('AWS_ACCESS_KEY_ID'),
            secret_key=app_config.get('AWS_SECRET_ACCESS_KEY'),
            region=app_config.get('S3_REGION', 'us-east-1'),
            endpoint_url=app_config.get('S3_ENDPOINT_URL')
        )
    except Exception:
        record_store.close()
        raise

    try:
        catalog = catalog_from_config(app_config, object_store)
    except Exception:
        record_store.close()
        object_store.close()
        raise

    return BackupOrchestrator(
        catalog=catalog,
        record_store=record_store,
        object_store=object_store,
        compression_level=app_config.get('BACKUP_COMPRESSION_LEVEL', 9),
        fetch_workers=app_config.get('BACKUP_FETCH_WORKERS', 4),
        fetch_queue_size=app_config.get('BACKUP_FETCH_QUEUE_SIZE', 8),
        object_buffer_limit=app_config.get('BACKUP_OBJECT_BUFFER_LIMIT', 32 * 1024 * 1024),
        chunk_size=app_config.get('BACKUP_CHUNK_SIZE', 1024 * 1024),
        include_manifest=app_config.get('BACKUP_INCLUDE_MANIFEST', True)
    )


class BackupExecutor:
    """
    Runs a backup for one requester and records it as a BackupRun.
    """

    def __init__(self, orchestrator: BackupOrchestrator, requested_by: str):
        """
        Initialize backup executor.

        Args:
            orchestrator: Orchestrator for this job
            requested_by: Username (or 'cli') the job runs for
        """
        self.orchestrator = orchestrator
        self.requested_by = requested_by
        self.archive_name = generate_archive_filename()
        self.run_record: Optional[BackupRun] = None
        self.run_id: Optional[int] = None
        self.bytes_sent = 0
        self.logs = []
        self._log_flush_counter = 0

    def stream(self, is_admin: bool) -> Iterator[bytes]:
        """
        Start the backup.

        Returns:
            Generator of archive bytes

        Raises:
            Unauthorized: If is_admin is false (no record is created)
            BackupInProgress: If this requester already has a backup running
        """
        with _running_lock:
            busy = self.requested_by in _running_requesters
            if not busy:
                _running_requesters.add(self.requested_by)

        if busy:
            self.orchestrator.close()
            raise BackupInProgress(f"A backup is already running for {self.requested_by}")

        try:
            chunks = self.orchestrator.run(is_admin)

            self.run_record = BackupRun(
                status='running',
                requested_by=self.requested_by,
                archive_name=self.archive_name,
                started_at=datetime.utcnow()
            )
            db.session.add(self.run_record)
            db.session.commit()
            self.run_id = self.run_record.id
        except Exception:
            self._release_slot()
            self.orchestrator.close()
            raise

        self._log(f"Starting backup {self.archive_name} for {self.requested_by}")
        return self._relay(chunks)

    def _relay(self, chunks: Iterator[bytes]) -> Iterator[bytes]:
        try:
            for chunk in chunks:
                self.bytes_sent += len(chunk)
                yield chunk
        except GeneratorExit:
            chunks.close()
            self._finish()
            raise
        except Exception:
            self._finish()
            raise
        else:
            self._finish()

    def _finish(self):
        """Persist the job result and free the requester's slot."""
        try:
            # The streaming response may run under a different session than stream()
            self.run_record = db.session.get(BackupRun, self.run_id)
            result: JobResult = self.orchestrator.result

            for failure in result.entries_failed:
                self._log(f"Failed {failure.path}: {failure.reason}")

            self.run_record.status = result.status
            self.run_record.completed_at = result.finished_at or datetime.utcnow()
            self.run_record.entries_written = result.entries_written
            self.run_record.entries_failed = json.dumps(
                [failure.to_dict() for failure in result.entries_failed]
            )
            self.run_record.bytes_sent = self.bytes_sent
            if result.fatal is not None:
                self.run_record.error_message = str(result.fatal)
                self._log(f"Backup failed: {result.fatal}")
            else:
                self._log(
                    f"Backup completed: {result.entries_written} entries, "
                    f"{len(result.entries_failed)} failed, {self.bytes_sent / 1024 / 1024:.2f} MB"
                )

            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()
        finally:
            self._release_slot()

    def _release_slot(self):
        with _running_lock:
            _running_requesters.discard(self.requested_by)

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        log_entry = f"[{timestamp}] {message}"
        self.logs.append(log_entry)
        current_app.logger.info(message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record:
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def export_backup(output, requested_by: str = 'cli') -> BackupRun:
    """
    Run a full backup and write the archive to a binary file object.

    Must be called inside an application context.

    Args:
        output: Writable binary file object
        requested_by: Name recorded on the BackupRun

    Returns:
        The finished BackupRun record

    Raises:
        BackupError: If the backup fails
    """
    orchestrator = build_orchestrator(current_app.config)
    executor = BackupExecutor(orchestrator, requested_by=requested_by)

    for chunk in executor.stream(is_admin=True):
        output.write(chunk)

    return executor.run_record
