"""
Streaming ZIP archive assembly.

The archive is written to an in-memory sink that never holds more than the bytes
produced since the last drain(). The caller drains after every write and hands the
bytes to the transport, so the whole backup is never held in memory and the archive
only grows as fast as the client reads it.

Entries are written with data descriptors (the sink is not seekable), deflate
compression, and ZIP64 headers whenever the entry size is unknown or large.
"""

import logging
import sys
import time
import zipfile
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Raised when the archive is used incorrectly."""
    pass


class AssemblerClosed(ArchiveError):
    """Raised when writing to an archive that was closed or aborted."""
    pass


class _OutputSink:
    """
    Non-seekable write target for ZipFile.

    It has no tell()/seek(), which makes zipfile switch to streaming mode.
    """

    def __init__(self):
        self._chunks: List[bytes] = []
        self._discarding = False
        self.bytes_written = 0

    def write(self, data) -> int:
        size = len(data)
        if size and not self._discarding:
            self._chunks.append(bytes(data))
            self.bytes_written += size
        return size

    def flush(self):
        pass

    def drain(self) -> bytes:
        data = b''.join(self._chunks)
        self._chunks.clear()
        return data

    def discard(self):
        """Drop pending output and ignore every later write."""
        self._discarding = True
        self._chunks.clear()


class ArchiveAssembler:
    """
    Append-only ZIP writer with a single open entry at a time.

    States: idle -> entry_open -> idle -> ... -> finalized (or failed after abort()).
    """

    IDLE = 'idle'
    ENTRY_OPEN = 'entry_open'
    FINALIZED = 'finalized'
    FAILED = 'failed'

    def __init__(self, compression_level: int = 9):
        """
        Args:
            compression_level: Deflate level 0-9, fixed for the whole archive
        """
        self._sink = _OutputSink()
        self._zip = zipfile.ZipFile(
            self._sink,
            mode='w',
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compression_level
        )
        self._compression_level = compression_level
        self._paths = set()
        self._handle = None
        self.state = self.IDLE
        self.entries_committed = 0

    @property
    def bytes_written(self) -> int:
        return self._sink.bytes_written

    def _entry_info(self, path: str) -> zipfile.ZipInfo:
        # Mirrors ZipFile.writestr: current time, archive compression, rw------- mode
        zinfo = zipfile.ZipInfo(path, date_time=time.localtime(time.time())[:6])
        zinfo.compress_type = zipfile.ZIP_DEFLATED
        if sys.version_info >= (3, 13):
            zinfo.compress_level = self._compression_level
        else:
            zinfo._compresslevel = self._compression_level
        zinfo.external_attr = 0o600 << 16
        return zinfo

    @contextmanager
    def open_entry(self, path: str, size: Optional[int] = None):
        """
        Open a new entry for writing.

        The entry is committed when the block exits, also when it exits with an
        exception, in which case the entry holds whatever was written.

        Args:
            path: Entry name, unique within the archive
            size: Payload size if known up front

        Raises:
            AssemblerClosed: If close() or abort() was already called
            ArchiveError: If another entry is open or path was already written
        """
        if self.state in (self.FINALIZED, self.FAILED):
            raise AssemblerClosed(f"Cannot add {path}: archive is {self.state}")
        if self.state == self.ENTRY_OPEN:
            raise ArchiveError(f"Cannot add {path}: another entry is still open")
        if path in self._paths:
            raise ArchiveError(f"Duplicate archive entry: {path}")

        force_zip64 = size is None or size >= zipfile.ZIP64_LIMIT
        self._handle = self._zip.open(self._entry_info(path), mode='w', force_zip64=force_zip64)
        self._paths.add(path)
        self.state = self.ENTRY_OPEN

        try:
            yield self._handle
        finally:
            # abort() may already have closed the handle
            if self.state == self.ENTRY_OPEN:
                self._handle.close()
                self._handle = None
                self.state = self.IDLE
                self.entries_committed += 1

    def write_entry(self, path: str, data: bytes):
        """Write a complete in-memory entry."""
        with self.open_entry(path, size=len(data)) as handle:
            handle.write(data)

    def drain(self) -> bytes:
        """Return the archive bytes produced since the last drain."""
        return self._sink.drain()

    def close(self) -> bytes:
        """
        Write the central directory and finalize the archive.

        Returns:
            The remaining archive bytes

        Raises:
            AssemblerClosed: If the archive was already closed or aborted
            ArchiveError: If an entry is still open
        """
        if self.state in (self.FINALIZED, self.FAILED):
            raise AssemblerClosed(f"Archive is already {self.state}")
        if self.state == self.ENTRY_OPEN:
            raise ArchiveError("Cannot close archive while an entry is open")

        self._zip.close()
        self.state = self.FINALIZED
        logger.debug(f"Archive finalized: {self.entries_committed} entries, {self.bytes_written} bytes")
        return self.drain()

    def abort(self):
        """
        Close the archive in a failed state.

        Pending output is dropped and no central directory reaches the transport,
        so a reader sees an incomplete archive. Safe to call more than once.
        """
        if self.state in (self.FINALIZED, self.FAILED):
            return

        self._sink.discard()
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        self._zip.close()
        self.state = self.FAILED
        logger.debug("Archive aborted")


def generate_archive_filename(now: Optional[datetime] = None) -> str:
    """
    Generate the download filename for a backup.

    Format: backup-{YYYY-MM-DDTHH-MM-SS-mmmZ}.zip (UTC)
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    timestamp = now.strftime('%Y-%m-%dT%H-%M-%S') + f"-{now.microsecond // 1000:03d}Z"
    return f"backup-{timestamp}.zip"
