"""
Backup orchestrator - drives one export from catalog to finished archive.

Workflow:
1. Refuse to start unless the caller is an administrator
2. Export every record set in catalog order (one table at a time)
3. Walk every container in catalog order, fetching leaves on a bounded worker pool
   and committing them to the archive in traversal order
4. Fail with EmptyBackup if no row and no object could be written
5. Write the manifest and finalize the archive

run() returns a generator of archive bytes. The generator only advances when the
consumer asks for the next chunk, which is what throttles the whole pipeline to the
speed of the client. Per-item failures are recorded on the JobResult and never stop
the job.
"""

import json
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional

from .archive import ArchiveAssembler
from .catalog import ContainerRef, RecordSetRef, SourceCatalog
from .objects import LeafObject, ObjectEnumerator, ObjectFetcher, ObjectUnavailable
from .records import RecordSetExporter, SourceUnavailable
from .storage import StorageError

logger = logging.getLogger(__name__)

MANIFEST_PATH = 'manifest.json'


class BackupError(Exception):
    """Base class for errors that end a backup job."""
    pass


class Unauthorized(BackupError):
    """Raised when a backup is requested without administrator rights."""
    pass


class EmptyBackup(BackupError):
    """Raised when neither a record set row nor an object could be written."""
    pass


class BackupCancelled(BackupError):
    """Recorded when the consumer stops reading before the archive is complete."""
    pass


@dataclass(frozen=True)
class EntryFailure:
    path: str
    reason: str

    def to_dict(self) -> dict:
        return {'path': self.path, 'reason': self.reason}


@dataclass
class JobResult:
    """Outcome of one backup job, owned and updated by the orchestrator."""
    entries_written: int = 0
    entries_failed: List[EntryFailure] = field(default_factory=list)
    fatal: Optional[BaseException] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    bytes_written: int = 0

    @property
    def succeeded(self) -> bool:
        return self.fatal is None and self.entries_written > 0

    @property
    def status(self) -> str:
        if self.finished_at is None:
            return 'running'
        if isinstance(self.fatal, BackupCancelled):
            return 'cancelled'
        if self.fatal is not None:
            return 'failed'
        return 'partial' if self.entries_failed else 'success'

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'entries_written': self.entries_written,
            'entries_failed': [failure.to_dict() for failure in self.entries_failed],
            'fatal': str(self.fatal) if self.fatal else None,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'bytes_written': self.bytes_written,
        }


class BackupOrchestrator:
    """
    Sequences record set export and object export into one archive.

    All collaborators are passed in and live as long as the job.
    """

    def __init__(
        self,
        catalog: SourceCatalog,
        record_store,
        object_store,
        compression_level: int = 9,
        fetch_workers: int = 4,
        fetch_queue_size: int = 8,
        object_buffer_limit: int = 32 * 1024 * 1024,
        chunk_size: int = 1024 * 1024,
        include_manifest: bool = True
    ):
        """
        Args:
            catalog: Sources to back up
            record_store: Store providing select_all(name)
            object_store: Store providing list_children() and download()
            compression_level: Deflate level for the archive
            fetch_workers: Threads downloading objects
            fetch_queue_size: Maximum leaves fetched ahead of the archive writer
            object_buffer_limit: Objects up to this size are read before being written
            chunk_size: Read size for streamed objects
            include_manifest: Add manifest.json describing the job to the archive
        """
        self.catalog = catalog
        self.record_store = record_store
        self.object_store = object_store
        self.compression_level = compression_level
        self.fetch_workers = max(1, fetch_workers)
        self.fetch_queue_size = max(1, fetch_queue_size)
        self.include_manifest = include_manifest

        self.exporter = RecordSetExporter(record_store)
        self.enumerator = ObjectEnumerator(object_store, on_error=self._on_listing_error)
        self.fetcher = ObjectFetcher(object_store, buffer_limit=object_buffer_limit, chunk_size=chunk_size)

        self.result = JobResult()
        self._assembler: Optional[ArchiveAssembler] = None
        self._has_content = False
        self._truncated_entries = 0

    def run(self, is_admin: bool) -> Iterator[bytes]:
        """
        Start the backup.

        Args:
            is_admin: Authorization decision made by the caller

        Returns:
            Generator of archive bytes; exhausting it completes the job

        Raises:
            Unauthorized: Immediately, before any I/O, when is_admin is false
        """
        if not is_admin:
            raise Unauthorized("Backups can only be requested by an administrator")

        self.result = JobResult()
        self._assembler = ArchiveAssembler(self.compression_level)
        self._has_content = False
        self._truncated_entries = 0
        return self._stream()

    def _stream(self) -> Iterator[bytes]:
        assembler = self._assembler
        logger.info(
            f"Backup started: {len(self.catalog.record_sets)} record sets, "
            f"{len(self.catalog.containers)} containers"
        )

        try:
            for record_set in self.catalog.record_sets:
                yield from self._export_record_set(record_set)

            for container in self.catalog.containers:
                yield from self._export_container(container)

            if not self._has_content:
                raise EmptyBackup("Backup is empty: no record set rows or objects could be exported")

            # Truncated entries are only explained by the manifest
            if self.include_manifest or self._truncated_entries:
                assembler.write_entry(MANIFEST_PATH, self._manifest())

            tail = assembler.close()
            if tail:
                yield tail

        except GeneratorExit:
            # Closing after the final chunk was handed out is not a cancellation
            if assembler.state != ArchiveAssembler.FINALIZED:
                self.result.fatal = BackupCancelled("Backup cancelled: client stopped reading")
                logger.warning("Backup cancelled by consumer")
                assembler.abort()
            raise
        except Exception as e:
            self.result.fatal = e
            logger.error(f"Backup failed: {e}")
            assembler.abort()
            raise
        finally:
            self.result.bytes_written = assembler.bytes_written
            self.result.finished_at = datetime.utcnow()
            self.close()

        logger.info(
            f"Backup finished: {self.result.entries_written} entries written, "
            f"{len(self.result.entries_failed)} failed, {self.result.bytes_written} bytes"
        )

    def _export_record_set(self, record_set: RecordSetRef) -> Iterator[bytes]:
        path = record_set.entry_path

        try:
            payload = self.exporter.export(record_set.name)
        except SourceUnavailable as e:
            self._record_failure(path, str(e))
            return

        if payload.record_count:
            self._has_content = True

        with self._assembler.open_entry(path) as entry:
            for chunk in payload:
                entry.write(chunk)
                yield from self._drain()

        self.result.entries_written += 1
        logger.debug(f"Wrote {path}")

    def _export_container(self, container: ContainerRef) -> Iterator[bytes]:
        pending = deque()
        pool = ThreadPoolExecutor(
            max_workers=self.fetch_workers,
            thread_name_prefix=f"backup-fetch-{container.name}"
        )
        completed = False

        try:
            for leaf in self.enumerator.enumerate(container.name):
                pending.append((leaf, pool.submit(self.fetcher.fetch, container.name, leaf)))

                # Bounded look-ahead: commit the oldest leaf before enumerating further
                if len(pending) >= self.fetch_queue_size:
                    leaf, future = pending.popleft()
                    yield from self._commit_object(container, leaf, future)

            while pending:
                leaf, future = pending.popleft()
                yield from self._commit_object(container, leaf, future)
            completed = True

        finally:
            if not completed:
                # Running fetches stop at their next chunk; queued ones never start
                self.fetcher.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            for _, future in pending:
                if future.done() and not future.cancelled() and future.exception() is None:
                    future.result().close()

    def _commit_object(self, container: ContainerRef, leaf: LeafObject, future: Future) -> Iterator[bytes]:
        path = container.entry_path(leaf.key)

        try:
            fetched = future.result()
        except ObjectUnavailable as e:
            self._record_failure(path, str(e))
            return

        try:
            with self._assembler.open_entry(path, size=fetched.size) as entry:
                self._has_content = True
                for chunk in fetched.chunks:
                    entry.write(chunk)
                    yield from self._drain()
        except ObjectUnavailable as e:
            # The entry was already open; it stays in the archive truncated
            self._truncated_entries += 1
            self._record_failure(path, f"Incomplete download: {e}")
            return
        finally:
            fetched.close()

        self.result.entries_written += 1
        logger.debug(f"Wrote {path}")

    def _drain(self) -> Iterator[bytes]:
        # Nothing is handed out before the first row or object
        if not self._has_content:
            return
        data = self._assembler.drain()
        if data:
            yield data

    def _on_listing_error(self, container: str, prefix: str, error: StorageError):
        self._record_failure(f"storage/{container}/{prefix}", f"Listing failed: {error}")

    def _record_failure(self, path: str, reason: str):
        self.result.entries_failed.append(EntryFailure(path, reason))
        logger.warning(f"Skipped {path}: {reason}")

    def _manifest(self) -> bytes:
        manifest = {
            'created_at': self.result.started_at.isoformat() + 'Z',
            'catalog': self.catalog.to_dict(),
            'entries_written': self.result.entries_written,
            'entries_failed': [failure.to_dict() for failure in self.result.entries_failed],
        }
        return json.dumps(manifest, indent=2).encode('utf-8')

    def close(self):
        """Release the record store and object store. Runs automatically when the archive stream ends."""
        for store in (self.record_store, self.object_store):
            close = getattr(store, 'close', None)
            if close:
                close()
