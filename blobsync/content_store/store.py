"""Content-addressed blob store backed by sharded files and a SQLite index."""

import os
import shutil
import sqlite3
import threading
import uuid
from collections import Counter
from collections.abc import Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from blobsync.content_store.models import ContentEntry
from blobsync.core.errors import CorruptTransferError, IoFailureError, NotFoundError
from blobsync.core.hashing import HashSource, StreamingHasher, is_valid_hash, iter_chunks, normalize_hash
from blobsync.core.logging import get_logger
from blobsync.core.retry import with_connection_retry, with_transaction_retry
from blobsync.core.timestamps import format_timestamp, parse_timestamp, utcnow

logger = get_logger("blobsync.content_store")

CommitListener = Callable[[ContentEntry], None]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS content_index (
    hash TEXT PRIMARY KEY,
    size_bytes INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_content_index_last_accessed
    ON content_index(last_accessed_at);
"""


class ContentStore:
    """Stores blobs under their BLAKE3 hash, one file per distinct hash.

    Layout under ``store_path``::

        content/<first two hash chars>/<HASH>   committed blobs
        tmp/                                    in-progress writes
        index.db                                SQLite entry index

    Identical bytes always hash to the same key, so each blob is stored once.
    Concurrent puts of the same hash share a single physical write.
    """

    def __init__(self, store_path: Path, clock: Optional[Callable[[], datetime]] = None):
        """Initialize content store.

        Args:
            store_path: Base directory for blobs and the index
            clock: Source of UTC timestamps, replaceable in tests
        """
        self.store_path = Path(store_path)
        self.content_path = self.store_path / "content"
        self.tmp_path = self.store_path / "tmp"
        self.db_path = self.store_path / "index.db"
        self._clock = clock or utcnow

        # Guards _inflight, _readers, _removing and _total_size; _removal_done shares it
        self._lock = threading.Lock()
        self._inflight: dict[str, Future[ContentEntry]] = {}
        self._readers: Counter[str] = Counter()
        self._removing: set[str] = set()
        self._removal_done = threading.Condition(self._lock)
        self._total_size = 0
        self._commit_listeners: list[CommitListener] = []

        self._init_directories()
        self.cleanup_temp()
        self._init_database()
        self._total_size = self._sum_index_sizes()

    def _init_directories(self) -> None:
        """Create necessary directory structure."""
        self.content_path.mkdir(parents=True, exist_ok=True)
        self.tmp_path.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Open the index, rebuilding it from disk when missing or corrupt."""
        existed = self.db_path.exists()
        if existed and not self._index_is_healthy():
            aside = self.db_path.with_name(
                f"index.db.corrupt.{self._clock().strftime('%Y%m%d_%H%M%S')}"
            )
            logger.warning("content_index_corrupt", moved_to=str(aside))
            self.db_path.rename(aside)
            for suffix in ("-wal", "-shm"):
                Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
            existed = False

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

        if not existed:
            self.rebuild_index()

    def _index_is_healthy(self) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute("PRAGMA quick_check").fetchone()
                conn.execute("SELECT 1 FROM content_index LIMIT 1").fetchall()
        except sqlite3.DatabaseError as e:
            logger.warning("content_index_unreadable", error=str(e))
            return False
        return bool(row) and row[0] == "ok"

    def _get_content_path(self, content_hash: str) -> Path:
        """Get path for a blob.

        Raises:
            ValueError: If hash format is invalid
        """
        content_hash = normalize_hash(content_hash)
        return self.content_path / content_hash[:2] / content_hash

    # -- queries -----------------------------------------------------------

    @with_connection_retry
    def has(self, content_hash: str) -> bool:
        """Check if a blob exists in the store.

        Raises:
            ValueError: If hash format is invalid
        """
        content_hash = normalize_hash(content_hash)
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM content_index WHERE hash = ?", (content_hash,)
            )
            return cursor.fetchone() is not None

    @with_connection_retry
    def get_entry(self, content_hash: str) -> ContentEntry | None:
        content_hash = normalize_hash(content_hash)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT hash, size_bytes, created_at, last_accessed_at "
                "FROM content_index WHERE hash = ?",
                (content_hash,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def _row_to_entry(self, row: tuple) -> ContentEntry:
        content_hash, size_bytes, created_at, last_accessed_at = row
        return ContentEntry(
            hash=content_hash,
            size_bytes=size_bytes,
            created_at=parse_timestamp(created_at),
            last_accessed_at=parse_timestamp(last_accessed_at),
            path=self._get_content_path(content_hash),
        )

    def enumerate(self, batch_size: int = 500) -> Iterator[ContentEntry]:
        """Lazily iterate over every committed entry."""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT hash, size_bytes, created_at, last_accessed_at FROM content_index"
            )
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                for row in rows:
                    yield self._row_to_entry(row)

    def total_size_bytes(self) -> int:
        with self._lock:
            return self._total_size

    def is_in_use(self, content_hash: str) -> bool:
        """Whether the blob is open for reading or being written."""
        content_hash = normalize_hash(content_hash)
        with self._lock:
            return self._is_in_use_locked(content_hash)

    def _is_in_use_locked(self, content_hash: str) -> bool:
        return self._readers[content_hash] > 0 or content_hash in self._inflight

    # -- reads ---------------------------------------------------------------

    @contextmanager
    def open(self, content_hash: str) -> Iterator[BinaryIO]:
        """Open a blob for reading and mark it as a cache hit.

        The entry cannot be evicted while the handle is open.

        Raises:
            NotFoundError: If the blob is not in the store
            IoFailureError: If the file cannot be opened
        """
        content_hash = normalize_hash(content_hash)
        with self._lock:
            if content_hash in self._removing:
                raise NotFoundError(content_hash)
            self._readers[content_hash] += 1

        try:
            if not self.has(content_hash):
                raise NotFoundError(content_hash)
            path = self._get_content_path(content_hash)
            try:
                handle = open(path, "rb")
            except FileNotFoundError as e:
                raise NotFoundError(content_hash) from e
            except OSError as e:
                raise IoFailureError(f"Failed to open {path}: {e}", path=path) from e

            self.touch(content_hash)
            with handle:
                yield handle
        finally:
            with self._lock:
                self._readers[content_hash] -= 1
                if self._readers[content_hash] <= 0:
                    del self._readers[content_hash]

    def read_bytes(self, content_hash: str) -> bytes:
        with self.open(content_hash) as handle:
            return handle.read()

    @with_transaction_retry
    def touch(self, content_hash: str, at: Optional[datetime] = None) -> bool:
        """Record a cache hit without reading the file.

        ``last_accessed_at`` never moves backwards.

        Returns:
            True if the entry exists
        """
        content_hash = normalize_hash(content_hash)
        timestamp = format_timestamp(at or self._clock())
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE content_index SET last_accessed_at = MAX(last_accessed_at, ?) "
                "WHERE hash = ?",
                (timestamp, content_hash),
            )
            return cursor.rowcount > 0

    # -- writes ----------------------------------------------------------------

    def add_commit_listener(self, listener: CommitListener) -> None:
        """Call ``listener`` after each new entry is committed and indexed."""
        self._commit_listeners.append(listener)

    def put(self, content_hash: str, source: HashSource) -> ContentEntry:
        """Store a blob under its hash.

        The bytes are written to ``tmp/``, verified against ``content_hash``
        and renamed into place, so a partial file is never visible under its
        final name. Concurrent puts for the same hash share one write.

        Args:
            content_hash: Claimed BLAKE3 hash of the content
            source: Raw bytes, a binary file object, or an iterable of chunks

        Returns:
            The committed entry

        Raises:
            ValueError: If hash format is invalid
            CorruptTransferError: If the bytes do not hash to ``content_hash``
            IoFailureError: If writing to disk fails
        """
        content_hash = normalize_hash(content_hash)

        while True:
            with self._lock:
                # A removal already past its in-use check must finish first
                while content_hash in self._removing:
                    self._removal_done.wait()
                future = self._inflight.get(content_hash)
                owner = future is None
                if owner:
                    future = Future()
                    self._inflight[content_hash] = future

            if not owner:
                try:
                    return future.result()
                except (CorruptTransferError, IoFailureError):
                    # The owner's bytes were bad; try again with ours
                    logger.debug("coalesced_put_retry", hash=content_hash)
                    continue

            try:
                entry, created = self._write(content_hash, source)
                if not created:
                    self.touch(content_hash)
                    entry = self.get_entry(content_hash) or entry
            except BaseException as e:
                future.set_exception(e)
                raise
            else:
                future.set_result(entry)
            finally:
                with self._lock:
                    self._inflight.pop(content_hash, None)

            if created:
                self._notify_commit(entry)
            return entry

    def _write(self, content_hash: str, source: HashSource) -> tuple[ContentEntry, bool]:
        existing = self.get_entry(content_hash)
        if existing is not None:
            return existing, False

        final_path = self._get_content_path(content_hash)
        tmp_file = self.tmp_path / f"{content_hash}.{uuid.uuid4().hex}.part"
        hasher = StreamingHasher()

        try:
            with open(tmp_file, "wb") as handle:
                for chunk in iter_chunks(source):
                    hasher.update(chunk)
                    handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())

            actual = hasher.hexdigest()
            if actual != content_hash:
                raise CorruptTransferError(content_hash, actual)

            final_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp_file, final_path)
        except OSError as e:
            raise IoFailureError(f"Failed to write {content_hash}: {e}", path=final_path) from e
        finally:
            tmp_file.unlink(missing_ok=True)

        now = self._clock()
        entry = ContentEntry(
            hash=content_hash,
            size_bytes=hasher.bytes_seen,
            created_at=now,
            last_accessed_at=now,
            path=final_path,
        )

        try:
            inserted = self._insert_index(entry)
        except sqlite3.Error as e:
            final_path.unlink(missing_ok=True)
            raise IoFailureError(f"Failed to index {content_hash}: {e}") from e

        if inserted:
            with self._lock:
                self._total_size += entry.size_bytes

        logger.debug("content_committed", hash=content_hash, size_bytes=entry.size_bytes)
        return entry, True

    @with_transaction_retry
    def _insert_index(self, entry: ContentEntry) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO content_index (hash, size_bytes, created_at, last_accessed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(hash) DO NOTHING
                """,
                (
                    entry.hash,
                    entry.size_bytes,
                    format_timestamp(entry.created_at),
                    format_timestamp(entry.last_accessed_at),
                ),
            )
            return cursor.rowcount > 0

    def _notify_commit(self, entry: ContentEntry) -> None:
        for listener in list(self._commit_listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("commit_listener_failed", hash=entry.hash)

    def remove(self, content_hash: str, *, skip_if_in_use: bool = False) -> int | None:
        """Delete a blob and its index row.

        Args:
            content_hash: Hash of the blob to remove
            skip_if_in_use: Leave the blob alone if it is open or being written

        Returns:
            Freed bytes (0 if the blob was absent), or None if skipped

        Raises:
            IoFailureError: If the file cannot be deleted
        """
        content_hash = normalize_hash(content_hash)
        with self._lock:
            if skip_if_in_use and self._is_in_use_locked(content_hash):
                return None
            if content_hash in self._removing:
                return 0
            self._removing.add(content_hash)

        try:
            entry = self.get_entry(content_hash)
            path = self._get_content_path(content_hash)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise IoFailureError(f"Failed to delete {path}: {e}", path=path) from e

            if entry is None:
                return 0

            self._delete_index(content_hash)
            with self._lock:
                self._total_size -= entry.size_bytes
            logger.debug("content_removed", hash=content_hash, size_bytes=entry.size_bytes)
            return entry.size_bytes
        finally:
            with self._lock:
                self._removing.discard(content_hash)
                self._removal_done.notify_all()

    @with_transaction_retry
    def _delete_index(self, content_hash: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM content_index WHERE hash = ?", (content_hash,))

    # -- recovery ----------------------------------------------------------------

    def cleanup_temp(self) -> int:
        """Delete leftovers of interrupted writes.

        Returns:
            Number of files removed
        """
        removed = 0
        for leftover in self.tmp_path.iterdir():
            if leftover.is_dir():
                shutil.rmtree(leftover, ignore_errors=True)
            else:
                leftover.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("temp_files_removed", count=removed)
        return removed

    def _sum_index_sizes(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) FROM content_index"
            ).fetchone()[0]

    def rebuild_index(self) -> int:
        """Rebuild the index from the files on disk.

        File names are the keys; files whose name is not a valid hash or that
        sit in the wrong shard are left out of the index.

        Returns:
            Number of entries indexed
        """
        rows = []
        for path in self.content_path.glob("*/*"):
            name = path.name
            if not path.is_file() or not is_valid_hash(name) or path.parent.name != name[:2]:
                logger.warning("unexpected_file_in_store", path=str(path))
                continue
            stat = path.stat()
            modified = format_timestamp(datetime.fromtimestamp(stat.st_mtime, timezone.utc))
            rows.append((name, stat.st_size, modified, modified))

        with self._connect() as conn:
            conn.execute("DELETE FROM content_index")
            conn.executemany(
                "INSERT INTO content_index (hash, size_bytes, created_at, last_accessed_at) "
                "VALUES (?, ?, ?, ?)",
                rows,
            )

        total = sum(row[1] for row in rows)
        with self._lock:
            self._total_size = total
        logger.info("content_index_rebuilt", entries=len(rows), total_size_bytes=total)
        return len(rows)

    def get_statistics(self) -> dict:
        """Get statistics about stored content.

        Returns:
            Dictionary with statistics
        """
        with self._connect() as conn:
            total, oldest, newest = conn.execute(
                "SELECT COUNT(*), MIN(last_accessed_at), MAX(last_accessed_at) "
                "FROM content_index"
            ).fetchone()

        return {
            "total_content": total,
            "store_size_bytes": self.total_size_bytes(),
            "oldest_access": oldest,
            "newest_access": newest,
            "index_path": str(self.db_path),
        }
