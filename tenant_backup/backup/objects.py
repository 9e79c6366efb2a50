"""
Object enumeration and fetching for storage containers.

A container listing mixes folders and objects. Each listing entry is classified once,
at the enumerator boundary, into a FolderMarker (expanded, never archived) or a
LeafObject (fetched and archived under its full key).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Union

from .storage import ListingEntry, StorageError

logger = logging.getLogger(__name__)


class ObjectUnavailable(Exception):
    """Raised when an object's content cannot be retrieved."""
    pass


@dataclass(frozen=True)
class FolderMarker:
    """A listing entry without a native object identity; ``key`` ends in '/'."""
    key: str

    is_leaf = False


@dataclass(frozen=True)
class LeafObject:
    """A stored object with content and a native identifier."""
    key: str
    object_id: str
    size: Optional[int] = None

    is_leaf = True


ObjectEntry = Union[FolderMarker, LeafObject]

# container, prefix, error
ListingFailureHandler = Callable[[str, str, StorageError], None]


def classify_listing_entry(prefix: str, entry: ListingEntry) -> ObjectEntry:
    """
    Decide whether a listing entry is a folder or a leaf object.

    An entry with no object identifier is always a folder, even if the store reports
    it with a size; it is never treated as a zero-byte file.
    """
    if not entry.object_id:
        return FolderMarker(key=f"{prefix}{entry.name}/")
    return LeafObject(key=f"{prefix}{entry.name}", object_id=entry.object_id, size=entry.size)


class ObjectEnumerator:
    """
    Depth-first walk of a container's folder hierarchy.

    The walk keeps an explicit frontier of open listings instead of recursing, so
    depth is not limited by the call stack. Children are visited in listing order and
    a folder is walked completely before its next sibling.
    """

    def __init__(self, store, on_error: Optional[ListingFailureHandler] = None):
        """
        Args:
            store: Object store providing list_children(container, prefix)
            on_error: Called with (container, prefix, error) when a listing fails
        """
        self.store = store
        self.on_error = on_error

    def enumerate(self, container: str, prefix: str = '') -> Iterator[LeafObject]:
        """
        Lazily yield every leaf object under prefix.

        A failed listing skips that folder's subtree only; the walk continues with
        its siblings.
        """
        frontier = [self._list(container, prefix)]

        while frontier:
            entry = next(frontier[-1], None)
            if entry is None:
                frontier.pop()
                continue

            if entry.is_leaf:
                yield entry
            else:
                frontier.append(self._list(container, entry.key))

    def _list(self, container: str, prefix: str) -> Iterator[ObjectEntry]:
        try:
            children: List[ListingEntry] = self.store.list_children(container, prefix)
        except StorageError as e:
            logger.warning(f"Skipping {container}/{prefix}: {e}")
            if self.on_error:
                self.on_error(container, prefix, e)
            return iter(())

        return iter([classify_listing_entry(prefix, child) for child in children])


class FetchedObject:
    """Content of one object, ready to be copied into the archive."""

    def __init__(self, key: str, size: Optional[int], chunks: Iterator[bytes],
                 source: Optional[Iterator[bytes]] = None):
        self.key = key
        self.size = size
        self.chunks = chunks
        self._source = source

    def close(self):
        """Release the underlying download stream if it was not fully read."""
        _close(self.chunks)
        # A wrapper that was never started does not close what it wraps
        if self._source is not None:
            _close(self._source)


class ObjectFetcher:
    """
    Downloads leaf objects.

    Objects up to ``buffer_limit`` bytes are read completely inside fetch(), so any
    failure is reported before an archive entry is opened. Larger objects, or objects
    of unknown size, are handed over as a lazy chunk stream.

    After cancel() no download is started and reads stop at the next chunk.
    """

    def __init__(self, store, buffer_limit: int = 32 * 1024 * 1024, chunk_size: int = 1024 * 1024):
        self.store = store
        self.buffer_limit = buffer_limit
        self.chunk_size = chunk_size
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Stop every fetch of this job, including ones running on other threads."""
        self._cancelled.set()

    def _check_cancelled(self, key: str):
        if self._cancelled.is_set():
            raise ObjectUnavailable(f"Fetch of {key} cancelled")

    def fetch(self, container: str, leaf: LeafObject) -> FetchedObject:
        """
        Retrieve one object's content.

        Raises:
            ObjectUnavailable: If the object cannot be opened or, for buffered
                objects, read completely
        """
        self._check_cancelled(leaf.key)
        try:
            size, chunks = self.store.download(container, leaf.key, self.chunk_size)
        except StorageError as e:
            raise ObjectUnavailable(str(e)) from e

        if size is not None and size <= self.buffer_limit:
            data = b''.join(self._stream(leaf.key, chunks))
            return FetchedObject(leaf.key, len(data), iter([data]))

        if self._cancelled.is_set():
            _close(chunks)
            self._check_cancelled(leaf.key)
        return FetchedObject(leaf.key, size, self._stream(leaf.key, chunks), source=chunks)

    def _stream(self, key: str, chunks: Iterator[bytes]) -> Iterator[bytes]:
        try:
            for chunk in chunks:
                self._check_cancelled(key)
                yield chunk
        except StorageError as e:
            raise ObjectUnavailable(str(e)) from e
        finally:
            _close(chunks)


def _close(chunks: Iterator[bytes]):
    close = getattr(chunks, 'close', None)
    if close:
        close()
